"""Presence change feed over Redis pub/sub.

Every committed mutation of a presence row is published as a JSON
``ChangeNotification`` on a channel per visibility class. Subscribers that
need both classes subscribe to each channel separately.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Iterable, Optional

from sidequests.domain.presence.exceptions import PresenceError
from sidequests.domain.presence.models import ChangeNotification, ChangeType, Presence, PresenceVisibility
from sidequests.infra.redis import redis_client
from sidequests.obs import metrics as obs_metrics
from sidequests.settings import settings

logger = logging.getLogger(__name__)

ALL_VISIBILITIES = (PresenceVisibility.FRIENDS, PresenceVisibility.PUBLIC)


def channel_for(visibility: PresenceVisibility) -> str:
	return f"{settings.presence_changes_channel_prefix}:{visibility.value}"


async def publish_change(
	change_type: ChangeType,
	*,
	new: Optional[Presence] = None,
	old: Optional[Presence] = None,
) -> None:
	"""Publish a change. Failures are logged, the row write already committed."""
	notification = ChangeNotification(type=change_type, new=new, old=old)
	visibility = notification.row.visibility
	try:
		await redis_client.publish(channel_for(visibility), notification.to_json())
	except Exception:
		logger.warning(
			"presence change publish failed type=%s presence=%s",
			change_type.value,
			notification.presence_id,
			exc_info=True,
		)
		return
	obs_metrics.presence_change_published(change_type.value, visibility.value)


class PresenceChangeSubscription:
	"""Live subscription to one or more visibility channels.

	Open it before taking a snapshot so no change committed after the
	snapshot query can be missed.
	"""

	def __init__(self, visibilities: Iterable[PresenceVisibility] = ALL_VISIBILITIES) -> None:
		self.channels = [channel_for(PresenceVisibility.parse(v)) for v in visibilities]
		self._pubsub = None

	async def open(self) -> "PresenceChangeSubscription":
		if self._pubsub is None:
			self._pubsub = redis_client.pubsub()
			# Per-value channels: each visibility class is its own subscription.
			for channel in self.channels:
				await self._pubsub.subscribe(channel)
		return self

	async def close(self) -> None:
		pubsub, self._pubsub = self._pubsub, None
		if pubsub is None:
			return
		for channel in self.channels:
			await pubsub.unsubscribe(channel)
		await pubsub.aclose()

	async def __aenter__(self) -> "PresenceChangeSubscription":
		return await self.open()

	async def __aexit__(self, exc_type, exc, tb) -> None:
		await self.close()

	async def __aiter__(self) -> AsyncIterator[ChangeNotification]:
		if self._pubsub is None:
			raise RuntimeError("subscription is not open")
		async for message in self._pubsub.listen():
			if message.get("type") != "message":
				continue
			try:
				yield ChangeNotification.from_json(message["data"])
			except (ValueError, KeyError, TypeError, PresenceError):
				logger.warning("dropping malformed presence change on %s", message.get("channel"))


async def subscribe_to_presence_changes(
	visibilities: Iterable[PresenceVisibility] = ALL_VISIBILITIES,
) -> PresenceChangeSubscription:
	"""Open a subscription to the requested visibility classes."""
	return await PresenceChangeSubscription(visibilities).open()
