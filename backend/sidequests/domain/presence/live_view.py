"""A viewer's live nearby view: feed subscription + snapshot + reconciler."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, List, Optional

from sidequests.domain.presence import feed
from sidequests.domain.presence.exceptions import NotFound, UpstreamUnavailable
from sidequests.domain.presence.lifecycle import PresenceLifecycleManager
from sidequests.domain.presence.models import Presence
from sidequests.domain.presence.reconciler import ChangeCallback, LiveViewReconciler, Revalidate, SelfCallback
from sidequests.domain.presence.service import NearbyService
from sidequests.domain.visibility import VisibilityResolver
from sidequests.obs import metrics as obs_metrics
from sidequests.settings import settings

logger = logging.getLogger(__name__)

Subscriber = Callable[[], Awaitable[feed.PresenceChangeSubscription]]


class LiveView:
	def __init__(
		self,
		viewer_id: str,
		*,
		nearby: NearbyService,
		lifecycle: PresenceLifecycleManager,
		resolver: VisibilityResolver,
		latitude: float,
		longitude: float,
		radius_miles: float,
		revalidate: Optional[Revalidate] = None,
		on_change: Optional[ChangeCallback] = None,
		on_self_change: Optional[SelfCallback] = None,
		subscribe: Subscriber = feed.subscribe_to_presence_changes,
	) -> None:
		self.viewer_id = viewer_id
		self._nearby = nearby
		self._lifecycle = lifecycle
		self._subscribe = subscribe
		self._subscription: Optional[feed.PresenceChangeSubscription] = None
		self._task: Optional[asyncio.Task] = None
		self.reconciler = LiveViewReconciler(
			viewer_id,
			resolver,
			latitude=latitude,
			longitude=longitude,
			radius_miles=radius_miles,
			fetch_snapshot=self._fetch_snapshot,
			revalidate=revalidate or settings.reconciler_revalidate,
			on_change=on_change,
			on_self_change=on_self_change,
		)

	@property
	def presences(self) -> List[Presence]:
		return self.reconciler.presences

	@property
	def my_presence(self) -> Optional[Presence]:
		return self.reconciler.my_presence

	@property
	def is_open(self) -> bool:
		return self._task is not None and not self._task.done()

	async def open(self) -> "LiveView":
		"""Subscribe first, then load the own broadcast and the nearby snapshot."""
		if self._task is not None:
			return self
		self._subscription = await self._subscribe()
		self._task = asyncio.create_task(self._consume(), name=f"live-view:{self.viewer_id}")
		obs_metrics.LIVE_VIEWS.inc()
		try:
			mine = await self._lifecycle.get_my_presence(self.viewer_id)
		except (NotFound, UpstreamUnavailable):
			mine = None
		await self.reconciler.set_my_presence(mine)
		await self.reconciler.refresh()
		return self

	async def move(self, latitude: float, longitude: float, radius_miles: Optional[float] = None) -> None:
		await self.reconciler.set_viewport(latitude, longitude, radius_miles or self.reconciler.radius_miles)
		await self.reconciler.refresh()

	async def close(self) -> None:
		"""Stop consuming the feed and release the subscription."""
		task, self._task = self._task, None
		if task is not None:
			task.cancel()
			with suppress(asyncio.CancelledError):
				await task
			obs_metrics.LIVE_VIEWS.dec()
		subscription, self._subscription = self._subscription, None
		if subscription is not None:
			await subscription.close()

	async def __aenter__(self) -> "LiveView":
		return await self.open()

	async def __aexit__(self, exc_type, exc, tb) -> None:
		await self.close()

	async def _fetch_snapshot(self) -> List[Presence]:
		reconciler = self.reconciler
		return await self._nearby.get_nearby_presences(
			self.viewer_id,
			reconciler.latitude,
			reconciler.longitude,
			reconciler.radius_miles,
		)

	async def _consume(self) -> None:
		"""Apply feed notifications, resubscribing with backoff when the feed drops."""
		delay = float(settings.presence_feed_retry_seconds)
		while True:
			subscription = self._subscription
			if subscription is not None:
				try:
					async for notification in subscription:
						delay = float(settings.presence_feed_retry_seconds)
						try:
							await self.reconciler.apply(notification)
						except Exception:
							logger.exception("live view failed to apply presence change viewer=%s", self.viewer_id)
				except asyncio.CancelledError:
					raise
				except Exception:
					logger.warning("presence feed dropped for viewer=%s, resubscribing", self.viewer_id, exc_info=True)
				else:
					logger.warning("presence feed ended for viewer=%s, resubscribing", self.viewer_id)
				self._subscription = None
				try:
					await subscription.close()
				except Exception:
					logger.debug("closing dropped presence subscription failed viewer=%s", self.viewer_id, exc_info=True)

			await asyncio.sleep(delay)
			delay = min(delay * 2, float(settings.presence_feed_retry_max_seconds))
			try:
				self._subscription = await self._subscribe()
			except asyncio.CancelledError:
				raise
			except Exception:
				logger.warning("presence feed resubscribe failed for viewer=%s", self.viewer_id, exc_info=True)
				continue
			obs_metrics.reconciler_outcome("resubscribed")
			# Changes published while unsubscribed are only visible through a snapshot.
			await self.reconciler.refresh()
