"""Event discovery and RSVPs scoped by invitation and friendship."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sidequests.domain.events.models import RSVP, Event
from sidequests.domain.events.store import EventStore
from sidequests.domain.presence.exceptions import NotFound
from sidequests.domain.presence.lifecycle import Clock, utcnow
from sidequests.domain.visibility import VisibilityResolver

logger = logging.getLogger(__name__)


class EventService:
	def __init__(self, store: EventStore, resolver: VisibilityResolver, *, clock: Clock = utcnow) -> None:
		self._store = store
		self._resolver = resolver
		self._clock = clock

	async def list_visible(self, viewer_id: str) -> List[Event]:
		events = await self._store.get_events()
		return await self._resolver.resolve_events(viewer_id, events, now=self._clock())

	async def get_visible(self, viewer_id: str, event_id: str) -> Event:
		"""Fetch one event, raising ``NotFound`` when the viewer may not see it."""
		event = await self._store.get_event(event_id)
		visible = await self._resolver.resolve_events(viewer_id, [event], now=self._clock())
		if not visible:
			raise NotFound("event_missing")
		return visible[0]

	async def invitees(self, viewer_id: str, event_id: str) -> List[str]:
		event = await self.get_visible(viewer_id, event_id)
		return sorted(event.invitee_set)

	async def create(
		self,
		host_user_id: str,
		*,
		title: str,
		latitude: float,
		longitude: float,
		date: Optional[datetime] = None,
		type: Optional[str] = None,
		invitees: Iterable[str] = (),
	) -> Event:
		event = await self._store.create_event(
			host_user_id,
			title=title,
			latitude=latitude,
			longitude=longitude,
			date=date,
			type=type,
			invitees=invitees,
		)
		logger.info("event created event=%s host=%s invitees=%s", event.id, host_user_id, len(event.invitee_set))
		return event

	async def rsvp(self, viewer_id: str, event_id: str) -> RSVP:
		await self.get_visible(viewer_id, event_id)
		return await self._store.add_rsvp(event_id, viewer_id)

	async def cancel_rsvp(self, viewer_id: str, event_id: str) -> None:
		await self._store.remove_rsvp(event_id, viewer_id)

	async def rsvps(self, viewer_id: str, event_id: str) -> List[RSVP]:
		await self.get_visible(viewer_id, event_id)
		return await self._store.list_rsvps(event_id)
