"""Persistence for presences and participants.

``PresenceStore`` is the contract the engine consumes. ``PostgresPresenceStore``
implements it on asyncpg and publishes every committed row change on the
presence change feed, which is what subscribers later reconcile against.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional, Protocol
from uuid import uuid4

import asyncpg

from sidequests.domain.presence import feed
from sidequests.domain.presence.exceptions import NotFound, UpstreamUnavailable
from sidequests.domain.presence.models import (
	ChangeType,
	Participant,
	ParticipantStatus,
	Presence,
	PresenceVisibility,
)
from sidequests.infra.postgres import get_pool

logger = logging.getLogger(__name__)


class PresenceStore(Protocol):
	async def start_presence(
		self,
		user_id: str,
		*,
		latitude: float,
		longitude: float,
		accuracy: Optional[float],
		status_text: Optional[str],
		default_status_text: str,
		visibility: Optional[PresenceVisibility],
		now: datetime,
		expires_at: datetime,
	) -> Presence: ...

	async def update_presence_location(
		self,
		user_id: str,
		*,
		latitude: float,
		longitude: float,
		accuracy: Optional[float],
		now: datetime,
		expires_at: Optional[datetime],
	) -> Presence: ...

	async def stop_presence(self, user_id: str) -> Optional[Presence]: ...

	async def get_my_presence(self, user_id: str, *, now: datetime) -> Presence: ...

	async def get_presence(self, presence_id: str) -> Presence: ...

	async def list_active_candidates(
		self,
		*,
		friend_ids: Iterable[str],
		now: datetime,
	) -> List[Presence]: ...

	async def expire_due(self, now: datetime) -> List[Presence]: ...

	async def get_participant(self, presence_id: str, user_id: str) -> Optional[Participant]: ...

	async def upsert_participant(
		self, presence_id: str, user_id: str, status: ParticipantStatus, now: datetime
	) -> Participant: ...

	async def delete_participant(self, presence_id: str, user_id: str) -> None: ...

	async def list_participants(self, presence_id: str) -> List[Participant]: ...


@asynccontextmanager
async def _upstream(operation: str) -> AsyncIterator[None]:
	try:
		yield
	except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
		logger.warning("presence store %s failed: %s", operation, exc.__class__.__name__)
		raise UpstreamUnavailable(operation) from exc


class PostgresPresenceStore:
	"""asyncpg implementation of :class:`PresenceStore`."""

	async def start_presence(
		self,
		user_id: str,
		*,
		latitude: float,
		longitude: float,
		accuracy: Optional[float],
		status_text: Optional[str],
		default_status_text: str,
		visibility: Optional[PresenceVisibility],
		now: datetime,
		expires_at: datetime,
	) -> Presence:
		retired: List[Presence] = []
		inserted = False
		pool = await get_pool()
		async with _upstream("start"):
			# A concurrent start for the same user trips the partial unique index;
			# the second attempt then sees the winner's row and updates it.
			for attempt in range(2):
				try:
					async with pool.acquire() as conn:
						async with conn.transaction():
							rows = await conn.fetch(
								"""
								SELECT * FROM spontaneous_presences
								WHERE user_id = $1 AND is_active = TRUE
								ORDER BY last_seen DESC
								FOR UPDATE
								""",
								user_id,
							)
							current = [Presence.from_record(row) for row in rows]
							keep: Optional[Presence] = None
							for presence in current:
								if keep is None and not presence.is_expired(now):
									keep = presence
									continue
								retired.append(await self._deactivate(conn, presence.id))
							if keep is not None:
								row = await conn.fetchrow(
									"""
									UPDATE spontaneous_presences
									SET status_text = COALESCE(NULLIF($2, ''), status_text),
										latitude = $3,
										longitude = $4,
										accuracy = $5,
										visibility = COALESCE($6, visibility),
										last_seen = $7,
										expires_at = $8
									WHERE id = $1
									RETURNING *
									""",
									keep.id,
									status_text,
									latitude,
									longitude,
									accuracy,
									visibility.value if visibility else None,
									now,
									expires_at,
								)
							else:
								row = await conn.fetchrow(
									"""
									INSERT INTO spontaneous_presences (
										id, user_id, status_text, latitude, longitude, accuracy,
										visibility, is_active, last_seen, expires_at
									)
									VALUES ($1, $2, $3, $4, $5, $6, $7, TRUE, $8, $9)
									RETURNING *
									""",
									str(uuid4()),
									user_id,
									(status_text or "").strip() or default_status_text,
									latitude,
									longitude,
									accuracy,
									(visibility or PresenceVisibility.FRIENDS).value,
									now,
									expires_at,
								)
								inserted = True
					break
				except asyncpg.UniqueViolationError:
					retired.clear()
					if attempt:
						raise
		presence = Presence.from_record(row)
		for old in retired:
			await feed.publish_change(ChangeType.UPDATE, new=old)
		await feed.publish_change(ChangeType.INSERT if inserted else ChangeType.UPDATE, new=presence)
		return presence

	async def update_presence_location(
		self,
		user_id: str,
		*,
		latitude: float,
		longitude: float,
		accuracy: Optional[float],
		now: datetime,
		expires_at: Optional[datetime],
	) -> Presence:
		pool = await get_pool()
		async with _upstream("update_location"):
			async with pool.acquire() as conn:
				row = await conn.fetchrow(
					"""
					UPDATE spontaneous_presences
					SET latitude = $2,
						longitude = $3,
						accuracy = $4,
						last_seen = $5,
						expires_at = COALESCE($6, expires_at)
					WHERE id = (
						SELECT id FROM spontaneous_presences
						WHERE user_id = $1 AND is_active = TRUE AND expires_at > $5
						ORDER BY last_seen DESC
						LIMIT 1
					)
					RETURNING *
					""",
					user_id,
					latitude,
					longitude,
					accuracy,
					now,
					expires_at,
				)
		if row is None:
			raise NotFound("no_active_presence")
		presence = Presence.from_record(row)
		await feed.publish_change(ChangeType.UPDATE, new=presence)
		return presence

	async def stop_presence(self, user_id: str) -> Optional[Presence]:
		pool = await get_pool()
		async with _upstream("stop"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(
					"""
					UPDATE spontaneous_presences
					SET is_active = FALSE
					WHERE user_id = $1 AND is_active = TRUE
					RETURNING *
					""",
					user_id,
				)
		stopped = [Presence.from_record(row) for row in rows]
		for presence in stopped:
			await feed.publish_change(ChangeType.UPDATE, new=presence)
		if not stopped:
			return None
		return max(stopped, key=lambda p: p.last_seen)

	async def get_my_presence(self, user_id: str, *, now: datetime) -> Presence:
		pool = await get_pool()
		async with _upstream("get_my_presence"):
			row = await pool.fetchrow(
				"""
				SELECT * FROM spontaneous_presences
				WHERE user_id = $1 AND is_active = TRUE AND expires_at > $2
				ORDER BY last_seen DESC
				LIMIT 1
				""",
				user_id,
				now,
			)
		if row is None:
			raise NotFound("no_active_presence")
		return Presence.from_record(row)

	async def get_presence(self, presence_id: str) -> Presence:
		pool = await get_pool()
		async with _upstream("get_presence"):
			row = await pool.fetchrow("SELECT * FROM spontaneous_presences WHERE id = $1", presence_id)
		if row is None:
			raise NotFound("presence_missing")
		return Presence.from_record(row)

	async def list_active_candidates(self, *, friend_ids: Iterable[str], now: datetime) -> List[Presence]:
		"""Active rows that are public, or friends-only from one of ``friend_ids``."""
		pool = await get_pool()
		async with _upstream("list_active_candidates"):
			rows = await pool.fetch(
				"""
				SELECT * FROM spontaneous_presences
				WHERE is_active = TRUE
				  AND expires_at > $2
				  AND (visibility = 'public' OR (visibility = 'friends' AND user_id = ANY($1::text[])))
				ORDER BY last_seen DESC
				""",
				sorted({str(uid) for uid in friend_ids}),
				now,
			)
		return [Presence.from_record(row) for row in rows]

	async def expire_due(self, now: datetime) -> List[Presence]:
		pool = await get_pool()
		async with _upstream("expire_due"):
			rows = await pool.fetch(
				"""
				UPDATE spontaneous_presences
				SET is_active = FALSE
				WHERE is_active = TRUE AND expires_at <= $1
				RETURNING *
				""",
				now,
			)
		expired = [Presence.from_record(row) for row in rows]
		for presence in expired:
			await feed.publish_change(ChangeType.UPDATE, new=presence)
		return expired

	async def get_participant(self, presence_id: str, user_id: str) -> Optional[Participant]:
		pool = await get_pool()
		async with _upstream("get_participant"):
			row = await pool.fetchrow(
				"SELECT * FROM spontaneous_participants WHERE presence_id = $1 AND user_id = $2",
				presence_id,
				user_id,
			)
		return Participant.from_record(row) if row else None

	async def upsert_participant(
		self, presence_id: str, user_id: str, status: ParticipantStatus, now: datetime
	) -> Participant:
		pool = await get_pool()
		async with _upstream("upsert_participant"):
			row = await pool.fetchrow(
				"""
				INSERT INTO spontaneous_participants (presence_id, user_id, status, updated_at)
				VALUES ($1, $2, $3, $4)
				ON CONFLICT (presence_id, user_id)
				DO UPDATE SET status = EXCLUDED.status, updated_at = EXCLUDED.updated_at
				RETURNING *
				""",
				presence_id,
				user_id,
				status.value,
				now,
			)
		return Participant.from_record(row)

	async def delete_participant(self, presence_id: str, user_id: str) -> None:
		pool = await get_pool()
		async with _upstream("delete_participant"):
			await pool.execute(
				"DELETE FROM spontaneous_participants WHERE presence_id = $1 AND user_id = $2",
				presence_id,
				user_id,
			)

	async def list_participants(self, presence_id: str) -> List[Participant]:
		pool = await get_pool()
		async with _upstream("list_participants"):
			rows = await pool.fetch(
				"""
				SELECT * FROM spontaneous_participants
				WHERE presence_id = $1
				ORDER BY updated_at ASC
				""",
				presence_id,
			)
		return [Participant.from_record(row) for row in rows]

	@staticmethod
	async def _deactivate(conn: asyncpg.Connection, presence_id: str) -> Presence:
		row = await conn.fetchrow(
			"UPDATE spontaneous_presences SET is_active = FALSE WHERE id = $1 RETURNING *",
			presence_id,
		)
		return Presence.from_record(row)

