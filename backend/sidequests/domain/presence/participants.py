"""Viewer intent ("coming" / "there") on someone else's broadcast."""

from __future__ import annotations

import logging
from typing import List, Optional, Union

from sidequests.domain.presence.exceptions import NotFound, ParticipationForbidden
from sidequests.domain.presence.lifecycle import Clock, utcnow
from sidequests.domain.presence.models import Participant, ParticipantStatus
from sidequests.domain.presence.store import PresenceStore
from sidequests.domain.visibility import VisibilityResolver

logger = logging.getLogger(__name__)


class ParticipantService:
	def __init__(self, store: PresenceStore, resolver: VisibilityResolver, *, clock: Clock = utcnow) -> None:
		self._store = store
		self._resolver = resolver
		self._clock = clock

	async def set_participation(
		self,
		presence_id: str,
		user_id: str,
		status: Union[ParticipantStatus, str, None],
	) -> Optional[ParticipantStatus]:
		"""Record the viewer's intent and return the effective status.

		Submitting the status the viewer already has clears it, as does ``None``.
		"""
		requested = ParticipantStatus(status) if status else None
		now = self._clock()
		presence = await self._store.get_presence(presence_id)
		if not presence.is_active or presence.is_expired(now):
			raise NotFound("presence_inactive")
		if presence.user_id == user_id:
			raise ParticipationForbidden("own_presence")
		# Invisible broadcasts look the same as missing ones.
		if not await self._resolver.can_see_presence(user_id, presence):
			raise NotFound("presence_missing")

		existing = await self._store.get_participant(presence_id, user_id)
		if requested is None or (existing is not None and existing.status is requested):
			if existing is not None:
				await self._store.delete_participant(presence_id, user_id)
			logger.debug("participation cleared presence=%s user=%s", presence_id, user_id)
			return None
		participant = await self._store.upsert_participant(presence_id, user_id, requested, now)
		return participant.status

	async def list_participants(self, presence_id: str, viewer_id: str) -> List[Participant]:
		"""List intents on a broadcast the viewer can see. Hidden broadcasts raise ``NotFound``."""
		presence = await self._store.get_presence(presence_id)
		if presence.user_id != viewer_id and not await self._resolver.can_see_presence(viewer_id, presence):
			raise NotFound("presence_missing")
		return await self._store.list_participants(presence_id)
