import asyncio
import sys
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from sidequests import container
from sidequests.domain.events.models import RSVP, Event
from sidequests.domain.presence import feed
from sidequests.domain.presence.exceptions import NotFound, UpstreamUnavailable
from sidequests.domain.presence.models import (
	ChangeNotification,
	ChangeType,
	Participant,
	ParticipantStatus,
	Presence,
	PresenceVisibility,
)
from sidequests.domain.social.models import Profile
from sidequests.infra import postgres
from sidequests.main import app
from sidequests.settings import settings

NOW = datetime(2026, 5, 1, 18, 0, tzinfo=timezone.utc)

# Downtown reference point and offsets expressed in miles along a meridian.
ORIGIN = (40.7128, -74.0060)
MILES_PER_DEGREE_LAT = 69.0934


def north_of(miles: float, origin: Tuple[float, float] = ORIGIN) -> Tuple[float, float]:
	return origin[0] + miles / MILES_PER_DEGREE_LAT, origin[1]


class FakeClock:
	def __init__(self, start: datetime = NOW) -> None:
		self.now = start

	def __call__(self) -> datetime:
		return self.now

	def advance(self, seconds: float) -> datetime:
		self.now = self.now + timedelta(seconds=seconds)
		return self.now


class FakeGraph:
	"""Undirected friendship graph with a switch to simulate outages."""

	def __init__(self) -> None:
		self.edges: Dict[str, Set[str]] = {}
		self.fail = False
		self.calls = 0

	def connect(self, a: str, b: str) -> None:
		self.edges.setdefault(a, set()).add(b)
		self.edges.setdefault(b, set()).add(a)

	def disconnect(self, a: str, b: str) -> None:
		self.edges.get(a, set()).discard(b)
		self.edges.get(b, set()).discard(a)

	async def get_connections(self, user_id: str) -> frozenset:
		self.calls += 1
		if self.fail:
			raise UpstreamUnavailable("social_graph")
		return frozenset(self.edges.get(user_id, set()))


class FakeProfiles:
	def __init__(self) -> None:
		self.profiles: Dict[str, Profile] = {}
		self.fail = False

	def add(self, user_id: str, name: str, picture: Optional[str] = None) -> Profile:
		profile = Profile(id=user_id, name=name, profile_picture=picture)
		self.profiles[user_id] = profile
		return profile

	async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, Profile]:
		if self.fail:
			raise UpstreamUnavailable("profiles")
		return {uid: self.profiles[uid] for uid in user_ids if uid in self.profiles}


class InMemoryPresenceStore:
	"""Presence store kept in dicts; publishes row changes like the Postgres one."""

	def __init__(self, *, publish: bool = True) -> None:
		self.rows: Dict[str, Presence] = {}
		self.participants: Dict[Tuple[str, str], Participant] = {}
		self.published: List[ChangeNotification] = []
		self.fail = False
		self._publish = publish

	def add(self, presence: Presence) -> Presence:
		self.rows[presence.id] = presence
		return presence

	def active_rows(self, user_id: str) -> List[Presence]:
		rows = [p for p in self.rows.values() if p.user_id == user_id and p.is_active]
		return sorted(rows, key=lambda p: p.last_seen, reverse=True)

	def _check(self) -> None:
		if self.fail:
			raise UpstreamUnavailable("memory_store")

	async def _emit(self, change_type: ChangeType, presence: Presence) -> None:
		self.published.append(ChangeNotification(type=change_type, new=presence))
		if self._publish:
			await feed.publish_change(change_type, new=presence)

	async def start_presence(
		self,
		user_id,
		*,
		latitude,
		longitude,
		accuracy,
		status_text,
		default_status_text,
		visibility,
		now,
		expires_at,
	) -> Presence:
		self._check()
		keep: Optional[Presence] = None
		for presence in self.active_rows(user_id):
			if keep is None and not presence.is_expired(now):
				keep = presence
				continue
			retired = self.add(replace(presence, is_active=False))
			await self._emit(ChangeType.UPDATE, retired)
		if keep is not None:
			presence = replace(
				keep,
				status_text=status_text or keep.status_text,
				latitude=latitude,
				longitude=longitude,
				accuracy=accuracy,
				visibility=visibility or keep.visibility,
				last_seen=now,
				expires_at=expires_at,
			)
			change_type = ChangeType.UPDATE
		else:
			presence = Presence(
				id=str(uuid4()),
				user_id=user_id,
				status_text=status_text or default_status_text,
				latitude=latitude,
				longitude=longitude,
				accuracy=accuracy,
				visibility=visibility or PresenceVisibility.FRIENDS,
				is_active=True,
				last_seen=now,
				expires_at=expires_at,
			)
			change_type = ChangeType.INSERT
		self.add(presence)
		await self._emit(change_type, presence)
		return presence

	async def update_presence_location(self, user_id, *, latitude, longitude, accuracy, now, expires_at) -> Presence:
		self._check()
		live = [p for p in self.active_rows(user_id) if not p.is_expired(now)]
		if not live:
			raise NotFound("no_active_presence")
		presence = live[0].moved_to(latitude, longitude, accuracy, now)
		if expires_at is not None:
			presence = replace(presence, expires_at=expires_at)
		self.add(presence)
		await self._emit(ChangeType.UPDATE, presence)
		return presence

	async def stop_presence(self, user_id) -> Optional[Presence]:
		self._check()
		stopped = []
		for presence in self.active_rows(user_id):
			stopped.append(self.add(replace(presence, is_active=False)))
			await self._emit(ChangeType.UPDATE, stopped[-1])
		return stopped[0] if stopped else None

	async def get_my_presence(self, user_id, *, now) -> Presence:
		self._check()
		live = [p for p in self.active_rows(user_id) if not p.is_expired(now)]
		if not live:
			raise NotFound("no_active_presence")
		return live[0]

	async def get_presence(self, presence_id) -> Presence:
		self._check()
		presence = self.rows.get(presence_id)
		if presence is None:
			raise NotFound("presence_missing")
		return presence

	async def list_active_candidates(self, *, friend_ids: Iterable[str], now) -> List[Presence]:
		self._check()
		friends = set(friend_ids)
		return [
			p
			for p in self.rows.values()
			if p.is_active
			and not p.is_expired(now)
			and (p.visibility is PresenceVisibility.PUBLIC or p.user_id in friends)
		]

	async def expire_due(self, now) -> List[Presence]:
		self._check()
		expired = []
		for presence in list(self.rows.values()):
			if presence.is_active and presence.expires_at <= now:
				expired.append(self.add(replace(presence, is_active=False)))
				await self._emit(ChangeType.UPDATE, expired[-1])
		return expired

	async def get_participant(self, presence_id, user_id) -> Optional[Participant]:
		self._check()
		return self.participants.get((presence_id, user_id))

	async def upsert_participant(self, presence_id, user_id, status: ParticipantStatus, now) -> Participant:
		self._check()
		participant = Participant(presence_id=presence_id, user_id=user_id, status=status, updated_at=now)
		self.participants[(presence_id, user_id)] = participant
		return participant

	async def delete_participant(self, presence_id, user_id) -> None:
		self._check()
		self.participants.pop((presence_id, user_id), None)

	async def list_participants(self, presence_id) -> List[Participant]:
		self._check()
		return [p for (pid, _), p in self.participants.items() if pid == presence_id]


class InMemoryEventStore:
	def __init__(self) -> None:
		self.events: Dict[str, Event] = {}
		self.rsvps: Dict[Tuple[str, str], RSVP] = {}
		self.fail = False

	def _check(self) -> None:
		if self.fail:
			raise UpstreamUnavailable("memory_events")

	def add(self, event: Event) -> Event:
		self.events[event.id] = event
		return event

	async def get_events(self) -> List[Event]:
		self._check()
		return list(self.events.values())

	async def get_event(self, event_id) -> Event:
		self._check()
		event = self.events.get(event_id)
		if event is None:
			raise NotFound("event_missing")
		return event

	async def get_event_invitees(self, event_id) -> List[str]:
		return sorted((await self.get_event(event_id)).invitee_set)

	async def create_event(self, host_user_id, *, title, latitude, longitude, date, type, invitees=()) -> Event:
		self._check()
		event = Event(
			id=str(uuid4()),
			host_user_id=host_user_id,
			latitude=latitude,
			longitude=longitude,
			title=title,
			type=type,
			date=date,
			invitee_set=frozenset(invitees),
		)
		return self.add(event)

	async def add_rsvp(self, event_id, user_id) -> RSVP:
		self._check()
		rsvp = self.rsvps.setdefault((event_id, user_id), RSVP(event_id=event_id, user_id=user_id, created_at=NOW))
		return rsvp

	async def remove_rsvp(self, event_id, user_id) -> None:
		self._check()
		self.rsvps.pop((event_id, user_id), None)

	async def list_rsvps(self, event_id) -> List[RSVP]:
		self._check()
		return [r for (eid, _), r in self.rsvps.items() if eid == event_id]


# Ensure a selector-based event loop policy on Windows to avoid Proactor issues with async IO
if hasattr(asyncio, "WindowsSelectorEventLoopPolicy"):
	try:
		asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
	except Exception:
		# Non-fatal; proceed with default policy
		pass


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from sidequests.infra.redis import redis_client, set_redis_client

	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		# Drop attributes tests monkeypatched onto the proxy instance; undoing
		# a monkeypatch leaves a stale bound method shadowing __getattr__.
		for name in [k for k in vars(redis_client) if k != "_client"]:
			delattr(redis_client, name)
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop(*_args, **_kwargs):
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Keep settings that tests depend on stable across environments."""
	original_env = settings.environment
	original_extends = settings.presence_location_extends_expiry
	original_revalidate = settings.reconciler_revalidate
	settings.environment = "dev"
	settings.presence_location_extends_expiry = False
	settings.reconciler_revalidate = "check"
	try:
		yield
	finally:
		settings.environment = original_env
		settings.presence_location_extends_expiry = original_extends
		settings.reconciler_revalidate = original_revalidate


@pytest.fixture
def clock():
	return FakeClock()


@pytest.fixture
def graph():
	return FakeGraph()


@pytest.fixture
def memory_store():
	return InMemoryPresenceStore()


@pytest.fixture
def event_store():
	return InMemoryEventStore()


@pytest.fixture
def profiles():
	return FakeProfiles()


@pytest.fixture
def make_presence():
	def _make(
		user_id: str,
		*,
		at: Tuple[float, float] = ORIGIN,
		visibility: PresenceVisibility = PresenceVisibility.FRIENDS,
		is_active: bool = True,
		last_seen: datetime = NOW,
		presence_id: Optional[str] = None,
		ttl_seconds: int = 600,
	) -> Presence:
		return Presence(
			id=presence_id or f"p-{user_id}",
			user_id=user_id,
			status_text="Available for a spontaneous hangout!",
			latitude=at[0],
			longitude=at[1],
			accuracy=None,
			visibility=visibility,
			is_active=is_active,
			last_seen=last_seen,
			expires_at=last_seen + timedelta(seconds=ttl_seconds),
		)

	return _make


@pytest_asyncio.fixture
async def services(memory_store, event_store, graph, profiles):
	built = container.build_services(
		presence_store=memory_store,
		event_store=event_store,
		graph=graph,
		profiles=profiles,
	)
	container.configure(built)
	try:
		yield built
	finally:
		await built.sessions.shutdown()
		container.configure(None)


@pytest_asyncio.fixture
async def api_client(services):
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
