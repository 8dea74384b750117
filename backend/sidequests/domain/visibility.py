"""Visibility decisions for presences and events.

Default-deny policy: when the social graph cannot be read, the viewer is
treated as having no connections. Friends-only presences and friends-scoped
events disappear from the result instead of the request failing, and nothing
friends-only is ever granted on a backend error. Public presences stay visible.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional

from sidequests.domain.events.models import Event
from sidequests.domain.geo import within_radius
from sidequests.domain.presence.exceptions import UpstreamUnavailable
from sidequests.domain.presence.models import Presence, PresenceVisibility
from sidequests.domain.social.graph import SocialGraph
from sidequests.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


def presences_visible_to(
	viewer_id: str,
	candidates: Iterable[Presence],
	connections: FrozenSet[str],
	*,
	now: Optional[datetime] = None,
) -> List[Presence]:
	"""Apply the visibility policy to ``candidates`` without any proximity test.

	The viewer's own broadcast is never part of the result; it is surfaced
	through the "my presence" channel instead.
	"""
	friends_group: List[Presence] = []
	public_group: List[Presence] = []
	for presence in candidates:
		if not presence.is_active or presence.user_id == viewer_id:
			continue
		if now is not None and presence.is_expired(now):
			continue
		if presence.visibility is PresenceVisibility.FRIENDS and presence.user_id in connections:
			friends_group.append(presence)
		elif presence.visibility is PresenceVisibility.PUBLIC:
			public_group.append(presence)

	merged: Dict[str, Presence] = {}
	for presence in friends_group + public_group:
		existing = merged.get(presence.id)
		if existing is None or presence.version > existing.version:
			merged[presence.id] = presence
	return list(merged.values())


def event_visible_to(viewer_id: str, event: Event, connections: FrozenSet[str]) -> bool:
	if event.host_user_id == viewer_id:
		return True
	if event.invitee_set:
		return viewer_id in event.invitee_set
	return event.host_user_id in connections


class VisibilityResolver:
	"""Decides which presences and events a viewer may see."""

	def __init__(self, graph: SocialGraph) -> None:
		self._graph = graph

	async def connections_for(self, viewer_id: str, *, scope: str = "presence") -> FrozenSet[str]:
		try:
			return await self._graph.get_connections(viewer_id)
		except UpstreamUnavailable:
			logger.warning("social graph unavailable, denying friends-only %s for viewer=%s", scope, viewer_id)
			obs_metrics.visibility_fail_closed(scope)
			return frozenset()

	async def resolve_presences(
		self,
		viewer_id: str,
		candidates: Iterable[Presence],
		*,
		latitude: float,
		longitude: float,
		radius_miles: float,
		now: Optional[datetime] = None,
	) -> List[Presence]:
		connections = await self.connections_for(viewer_id)
		visible = presences_visible_to(viewer_id, candidates, connections, now=now)
		return within_radius(latitude, longitude, radius_miles, visible)

	async def can_see_presence(self, viewer_id: str, presence: Presence) -> bool:
		"""Policy test for a single row, ignoring distance."""
		if not presence.is_active or presence.user_id == viewer_id:
			return False
		if presence.visibility is PresenceVisibility.PUBLIC:
			return True
		connections = await self.connections_for(viewer_id)
		return presence.user_id in connections

	async def resolve_events(
		self,
		viewer_id: str,
		events: Iterable[Event],
		*,
		now: Optional[datetime] = None,
	) -> List[Event]:
		# Past events are filtered here as well; callers may pass unfiltered rows.
		now = now or datetime.now(timezone.utc)
		eligible = [event for event in events if event.is_upcoming(now)]
		needs_graph = any(
			event.host_user_id != viewer_id and not event.invitee_set for event in eligible
		)
		connections = await self.connections_for(viewer_id, scope="event") if needs_graph else frozenset()
		return [event for event in eligible if event_visible_to(viewer_id, event, connections)]
