"""Tables used by the presence and event services, created on startup when missing."""

from __future__ import annotations

import asyncpg

PRESENCE_DDL = """
CREATE TABLE IF NOT EXISTS spontaneous_presences (
	id TEXT PRIMARY KEY,
	user_id TEXT NOT NULL,
	status_text TEXT NOT NULL,
	latitude DOUBLE PRECISION NOT NULL,
	longitude DOUBLE PRECISION NOT NULL,
	accuracy DOUBLE PRECISION,
	visibility TEXT NOT NULL DEFAULT 'friends' CHECK (visibility IN ('friends', 'public')),
	is_active BOOLEAN NOT NULL DEFAULT TRUE,
	last_seen TIMESTAMPTZ NOT NULL,
	expires_at TIMESTAMPTZ NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_spontaneous_presences_active_user
	ON spontaneous_presences (user_id) WHERE is_active;
CREATE INDEX IF NOT EXISTS idx_spontaneous_presences_expiry
	ON spontaneous_presences (expires_at) WHERE is_active;

CREATE TABLE IF NOT EXISTS spontaneous_participants (
	presence_id TEXT NOT NULL REFERENCES spontaneous_presences (id),
	user_id TEXT NOT NULL,
	status TEXT NOT NULL CHECK (status IN ('coming', 'there')),
	updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	PRIMARY KEY (presence_id, user_id)
);
"""

EVENT_DDL = """
CREATE TABLE IF NOT EXISTS events (
	id TEXT PRIMARY KEY,
	user_id TEXT NOT NULL,
	title TEXT NOT NULL DEFAULT '',
	type TEXT,
	date TIMESTAMPTZ,
	latitude DOUBLE PRECISION NOT NULL,
	longitude DOUBLE PRECISION NOT NULL
);

CREATE TABLE IF NOT EXISTS event_invitees (
	event_id TEXT NOT NULL REFERENCES events (id),
	user_id TEXT NOT NULL,
	PRIMARY KEY (event_id, user_id)
);

CREATE TABLE IF NOT EXISTS event_rsvps (
	event_id TEXT NOT NULL REFERENCES events (id),
	user_id TEXT NOT NULL,
	created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
	PRIMARY KEY (event_id, user_id)
);
"""


async def ensure_schema(pool: asyncpg.pool.Pool) -> None:
	async with pool.acquire() as conn:
		await conn.execute(PRESENCE_DDL)
		await conn.execute(EVENT_DDL)
