"""Periodic expiry of broadcasts whose TTL has passed."""

from __future__ import annotations

import asyncio
import logging
from typing import List

from sidequests.domain.presence.exceptions import UpstreamUnavailable
from sidequests.domain.presence.lifecycle import Clock, utcnow
from sidequests.domain.presence.models import Presence
from sidequests.domain.presence.store import PresenceStore
from sidequests.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


async def sweep_once(store: PresenceStore, *, clock: Clock = utcnow) -> List[Presence]:
	expired = await store.expire_due(clock())
	if expired:
		obs_metrics.PRESENCE_EXPIRED.inc(len(expired))
		logger.info("presence sweeper expired %s broadcasts", len(expired))
	return expired


async def run_presence_sweeper(store: PresenceStore, interval_s: float = 60.0, *, clock: Clock = utcnow) -> None:
	"""Flip expired broadcasts inactive every ``interval_s`` seconds until cancelled."""
	interval = max(0.05, float(interval_s))
	while True:
		await asyncio.sleep(interval)
		try:
			await sweep_once(store, clock=clock)
		except UpstreamUnavailable:
			logger.warning("presence sweeper iteration skipped, store unavailable")
		except asyncio.CancelledError:
			raise
		except Exception:  # pragma: no cover - defensive logging
			logger.exception("presence sweeper iteration failed")
