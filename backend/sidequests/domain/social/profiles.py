"""Profile lookups for broadcasters shown in presence responses."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, Protocol

import asyncpg

from sidequests.domain.presence.exceptions import UpstreamUnavailable
from sidequests.domain.social.models import Profile
from sidequests.infra.postgres import get_pool

logger = logging.getLogger(__name__)


class ProfileDirectory(Protocol):
	async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, Profile]: ...


class PostgresProfileDirectory:
	"""Reads display fields from the ``users`` table owned by the account service."""

	async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, Profile]:
		ids = sorted(set(user_ids))
		if not ids:
			return {}
		try:
			pool = await get_pool()
			rows = await pool.fetch(
				"SELECT id, name, profile_picture FROM users WHERE id = ANY($1::text[])",
				ids,
			)
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
			logger.warning("profile lookup failed for %d users: %s", len(ids), exc.__class__.__name__)
			raise UpstreamUnavailable("profiles") from exc
		profiles = (Profile.from_record(row) for row in rows)
		return {profile.id: profile for profile in profiles}
