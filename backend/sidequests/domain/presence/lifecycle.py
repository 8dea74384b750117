"""Start/refresh/stop transitions for a user's spontaneous broadcast.

States are NONE -> ACTIVE -> STOPPED/EXPIRED. Stopped and expired rows are
terminal: a later ``start`` creates a fresh row instead of reviving them.
Every write is keyed by ``user_id`` plus ``is_active`` so a user never has
more than one active row.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sidequests.domain.presence.exceptions import NotFound
from sidequests.domain.presence.models import Presence, PresenceVisibility, StartPresenceRequest
from sidequests.domain.presence.store import PresenceStore
from sidequests.obs import metrics as obs_metrics
from sidequests.settings import settings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


class PresenceLifecycleManager:
	def __init__(self, store: PresenceStore, *, clock: Clock = utcnow) -> None:
		self._store = store
		self._clock = clock

	@property
	def ttl(self) -> timedelta:
		return timedelta(seconds=settings.presence_ttl_seconds)

	async def start(self, request: StartPresenceRequest) -> Presence:
		"""Create the user's broadcast, or refresh it in place when one is active."""
		visibility: Optional[PresenceVisibility] = None
		if request.visibility is not None:
			visibility = PresenceVisibility.parse(request.visibility)
		now = self._clock()
		presence = await self._store.start_presence(
			request.user_id,
			latitude=request.latitude,
			longitude=request.longitude,
			accuracy=request.accuracy,
			status_text=(request.status_text or "").strip() or None,
			default_status_text=settings.presence_default_status_text,
			visibility=visibility,
			now=now,
			expires_at=now + self.ttl,
		)
		obs_metrics.presence_transition("start")
		logger.info(
			"presence started user=%s presence=%s visibility=%s",
			request.user_id,
			presence.id,
			presence.visibility.value,
		)
		return presence

	async def update_location(
		self,
		user_id: str,
		latitude: float,
		longitude: float,
		accuracy: Optional[float] = None,
	) -> Presence:
		"""Move the active broadcast. Raises ``NotFound`` when nothing is active.

		``expires_at`` is left alone unless ``presence_location_extends_expiry``
		is enabled; a moving broadcaster re-starts to stay visible.
		"""
		now = self._clock()
		expires_at = now + self.ttl if settings.presence_location_extends_expiry else None
		presence = await self._store.update_presence_location(
			user_id,
			latitude=latitude,
			longitude=longitude,
			accuracy=accuracy,
			now=now,
			expires_at=expires_at,
		)
		obs_metrics.presence_transition("update_location")
		return presence

	async def stop(self, user_id: str) -> Optional[Presence]:
		"""Deactivate the broadcast. Stopping with nothing active succeeds."""
		try:
			stopped = await self._store.stop_presence(user_id)
		except NotFound:
			stopped = None
		if stopped is None:
			logger.debug("presence stop no-op user=%s", user_id)
			return None
		obs_metrics.presence_transition("stop")
		logger.info("presence stopped user=%s presence=%s", user_id, stopped.id)
		return stopped

	async def get_my_presence(self, user_id: str) -> Presence:
		return await self._store.get_my_presence(user_id, now=self._clock())
