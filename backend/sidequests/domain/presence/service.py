"""Nearby lookup performed on behalf of a viewer."""

from __future__ import annotations

import logging
from typing import List, Optional

from sidequests.domain.geo import within_radius
from sidequests.domain.presence.lifecycle import Clock, utcnow
from sidequests.domain.presence.models import Presence
from sidequests.domain.presence.store import PresenceStore
from sidequests.domain.visibility import VisibilityResolver, presences_visible_to

logger = logging.getLogger(__name__)


class NearbyService:
	def __init__(self, store: PresenceStore, resolver: VisibilityResolver, *, clock: Clock = utcnow) -> None:
		self._store = store
		self._resolver = resolver
		self._clock = clock

	async def get_nearby_presences(
		self,
		viewer_id: str,
		latitude: float,
		longitude: float,
		radius_miles: float,
		*,
		connections: Optional[frozenset] = None,
	) -> List[Presence]:
		"""Visible active broadcasts within ``radius_miles`` of the viewer.

		Store failures raise ``UpstreamUnavailable`` so a caller holding a
		previous result can keep it instead of replacing it with nothing.
		"""
		if connections is None:
			connections = await self._resolver.connections_for(viewer_id)
		now = self._clock()
		candidates = await self._store.list_active_candidates(friend_ids=connections, now=now)
		visible = presences_visible_to(viewer_id, candidates, connections, now=now)
		nearby = within_radius(latitude, longitude, radius_miles, visible)
		logger.debug(
			"nearby viewer=%s radius=%s candidates=%s visible=%s",
			viewer_id,
			radius_miles,
			len(candidates),
			len(nearby),
		)
		return nearby
