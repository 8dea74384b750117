"""Process-wide service wiring.

Stores and the social graph are stateless wrappers around the shared asyncpg
pool and redis client, so one instance of each serves every request. Tests
swap collaborators through ``configure`` or FastAPI dependency overrides.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sidequests.domain.events.service import EventService
from sidequests.domain.events.store import EventStore, PostgresEventStore
from sidequests.domain.presence.lifecycle import PresenceLifecycleManager
from sidequests.domain.presence.participants import ParticipantService
from sidequests.domain.presence.service import NearbyService
from sidequests.domain.presence.session import SessionRegistry
from sidequests.domain.presence.store import PostgresPresenceStore, PresenceStore
from sidequests.domain.social.graph import PostgresSocialGraph, SocialGraph
from sidequests.domain.social.profiles import PostgresProfileDirectory, ProfileDirectory
from sidequests.domain.visibility import VisibilityResolver


@dataclass
class Services:
	presence_store: PresenceStore
	event_store: EventStore
	graph: SocialGraph
	profiles: ProfileDirectory
	resolver: VisibilityResolver
	lifecycle: PresenceLifecycleManager
	nearby: NearbyService
	participants: ParticipantService
	events: EventService
	sessions: SessionRegistry


def build_services(
	*,
	presence_store: Optional[PresenceStore] = None,
	event_store: Optional[EventStore] = None,
	graph: Optional[SocialGraph] = None,
	profiles: Optional[ProfileDirectory] = None,
) -> Services:
	presence_store = presence_store or PostgresPresenceStore()
	event_store = event_store or PostgresEventStore()
	graph = graph or PostgresSocialGraph()
	resolver = VisibilityResolver(graph)
	lifecycle = PresenceLifecycleManager(presence_store)
	return Services(
		presence_store=presence_store,
		event_store=event_store,
		graph=graph,
		profiles=profiles or PostgresProfileDirectory(),
		resolver=resolver,
		lifecycle=lifecycle,
		nearby=NearbyService(presence_store, resolver),
		participants=ParticipantService(presence_store, resolver),
		events=EventService(event_store, resolver),
		sessions=SessionRegistry(lifecycle),
	)


_services: Optional[Services] = None


def get_services() -> Services:
	global _services
	if _services is None:
		_services = build_services()
	return _services


def configure(services: Optional[Services]) -> None:
	global _services
	_services = services
