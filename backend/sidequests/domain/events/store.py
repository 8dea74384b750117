"""Event persistence on asyncpg."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Protocol
from uuid import uuid4

import asyncpg

from sidequests.domain.events.models import RSVP, Event
from sidequests.domain.presence.exceptions import NotFound, UpstreamUnavailable
from sidequests.infra.postgres import get_pool

logger = logging.getLogger(__name__)


class EventStore(Protocol):
	async def get_events(self) -> List[Event]: ...

	async def get_event(self, event_id: str) -> Event: ...

	async def get_event_invitees(self, event_id: str) -> List[str]: ...

	async def create_event(
		self,
		host_user_id: str,
		*,
		title: str,
		latitude: float,
		longitude: float,
		date: Optional[datetime],
		type: Optional[str],
		invitees: Iterable[str],
	) -> Event: ...

	async def add_rsvp(self, event_id: str, user_id: str) -> RSVP: ...

	async def remove_rsvp(self, event_id: str, user_id: str) -> None: ...

	async def list_rsvps(self, event_id: str) -> List[RSVP]: ...


@asynccontextmanager
async def _upstream(operation: str) -> AsyncIterator[None]:
	try:
		yield
	except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
		logger.warning("event store %s failed: %s", operation, exc.__class__.__name__)
		raise UpstreamUnavailable(operation) from exc


class PostgresEventStore:
	async def get_events(self) -> List[Event]:
		"""All events with their invitee sets attached."""
		pool = await get_pool()
		async with _upstream("get_events"):
			rows = await pool.fetch("SELECT * FROM events ORDER BY date ASC NULLS LAST")
			invitee_rows = await pool.fetch(
				"SELECT event_id, user_id FROM event_invitees WHERE event_id = ANY($1::text[])",
				[str(row["id"]) for row in rows],
			)
		invitees: Dict[str, List[str]] = {}
		for row in invitee_rows:
			invitees.setdefault(str(row["event_id"]), []).append(str(row["user_id"]))
		return [Event.from_record(row).with_invitees(invitees.get(str(row["id"]), [])) for row in rows]

	async def get_event(self, event_id: str) -> Event:
		pool = await get_pool()
		async with _upstream("get_event"):
			row = await pool.fetchrow("SELECT * FROM events WHERE id = $1", event_id)
		if row is None:
			raise NotFound("event_missing")
		return Event.from_record(row).with_invitees(await self.get_event_invitees(event_id))

	async def get_event_invitees(self, event_id: str) -> List[str]:
		pool = await get_pool()
		async with _upstream("get_event_invitees"):
			rows = await pool.fetch(
				"SELECT user_id FROM event_invitees WHERE event_id = $1 ORDER BY user_id",
				event_id,
			)
		return [str(row["user_id"]) for row in rows]

	async def create_event(
		self,
		host_user_id: str,
		*,
		title: str,
		latitude: float,
		longitude: float,
		date: Optional[datetime],
		type: Optional[str],
		invitees: Iterable[str],
	) -> Event:
		invitee_ids = sorted({str(uid) for uid in invitees if str(uid) != host_user_id})
		pool = await get_pool()
		async with _upstream("create_event"):
			async with pool.acquire() as conn:
				async with conn.transaction():
					row = await conn.fetchrow(
						"""
						INSERT INTO events (id, user_id, title, type, date, latitude, longitude)
						VALUES ($1, $2, $3, $4, $5, $6, $7)
						RETURNING *
						""",
						str(uuid4()),
						host_user_id,
						title,
						type,
						date,
						latitude,
						longitude,
					)
					if invitee_ids:
						await conn.executemany(
							"INSERT INTO event_invitees (event_id, user_id) VALUES ($1, $2) ON CONFLICT DO NOTHING",
							[(str(row["id"]), uid) for uid in invitee_ids],
						)
		return Event.from_record(row).with_invitees(invitee_ids)

	async def add_rsvp(self, event_id: str, user_id: str) -> RSVP:
		pool = await get_pool()
		async with _upstream("add_rsvp"):
			row = await pool.fetchrow(
				"""
				INSERT INTO event_rsvps (event_id, user_id)
				VALUES ($1, $2)
				ON CONFLICT (event_id, user_id) DO UPDATE SET user_id = EXCLUDED.user_id
				RETURNING *
				""",
				event_id,
				user_id,
			)
		return RSVP.from_record(row)

	async def remove_rsvp(self, event_id: str, user_id: str) -> None:
		pool = await get_pool()
		async with _upstream("remove_rsvp"):
			await pool.execute(
				"DELETE FROM event_rsvps WHERE event_id = $1 AND user_id = $2",
				event_id,
				user_id,
			)

	async def list_rsvps(self, event_id: str) -> List[RSVP]:
		pool = await get_pool()
		async with _upstream("list_rsvps"):
			rows = await pool.fetch(
				"SELECT * FROM event_rsvps WHERE event_id = $1 ORDER BY created_at ASC",
				event_id,
			)
		return [RSVP.from_record(row) for row in rows]
