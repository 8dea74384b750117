"""Social graph lookups used by visibility decisions."""

from __future__ import annotations

import asyncio
import logging
from typing import FrozenSet, Protocol

import asyncpg

from sidequests.domain.presence.exceptions import UpstreamUnavailable
from sidequests.domain.social.models import Friendship, FriendshipStatus
from sidequests.infra.postgres import get_pool

logger = logging.getLogger(__name__)


class SocialGraph(Protocol):
	async def get_connections(self, user_id: str) -> FrozenSet[str]: ...


class PostgresSocialGraph:
	"""Reads accepted friendships in either direction.

	Results reflect a single query; callers must not cache them as current.
	"""

	async def get_connections(self, user_id: str) -> FrozenSet[str]:
		try:
			pool = await get_pool()
			rows = await pool.fetch(
				"""
				SELECT user_id_1, user_id_2, status
				FROM friendships
				WHERE (user_id_1 = $1 OR user_id_2 = $1) AND status = $2
				""",
				user_id,
				FriendshipStatus.ACCEPTED.value,
			)
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
			logger.warning("friendship lookup failed for user=%s: %s", user_id, exc.__class__.__name__)
			raise UpstreamUnavailable("social_graph") from exc
		connections = {Friendship.from_record(row).other(user_id) for row in rows}
		connections.discard(user_id)
		return frozenset(connections)


async def are_connected(graph: SocialGraph, user_a: str, user_b: str) -> bool:
	if user_a == user_b:
		return False
	return user_b in await graph.get_connections(user_a)
