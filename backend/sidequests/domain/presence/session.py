"""Session-scoped ownership of a user's current broadcast.

A ``BroadcastSession`` holds the user's live presence and runs the periodic
location refresh while broadcasting. The refresh only writes a location the
client reported since the last write, and it stops once neither a location
report nor a connected socket has been seen for the idle window.
``SessionRegistry`` owns the sessions; sign-out, disconnect and shutdown go
through it so no refresh task outlives the user leaving the broadcasting flow.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

from sidequests.domain.presence.exceptions import NotFound, UpstreamUnavailable
from sidequests.domain.presence.lifecycle import PresenceLifecycleManager
from sidequests.domain.presence.models import Presence, PresenceVisibility, StartPresenceRequest
from sidequests.obs import metrics as obs_metrics
from sidequests.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class LastKnownLocation:
    latitude: float
    longitude: float
    accuracy: Optional[float] = None


class BroadcastSession:
    def __init__(
        self,
        user_id: str,
        lifecycle: PresenceLifecycleManager,
        *,
        interval_s: Optional[float] = None,
        idle_s: Optional[float] = None,
        activity: Optional[Callable[[], int]] = None,
    ) -> None:
        self.user_id = user_id
        self.presence: Optional[Presence] = None
        self.location: Optional[LastKnownLocation] = None
        self._lifecycle = lifecycle
        self._interval = interval_s
        self._idle = idle_s
        self._activity = activity or (lambda: 0)
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._ended: Set[str] = set()
        self._last_report = time.monotonic()
        self._pending = False

    @property
    def is_broadcasting(self) -> bool:
        return self.presence is not None

    @property
    def refreshing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(
        self,
        latitude: float,
        longitude: float,
        *,
        accuracy: Optional[float] = None,
        status_text: Optional[str] = None,
        visibility: Optional[PresenceVisibility | str] = None,
    ) -> Presence:
        presence = await self._lifecycle.start(
            StartPresenceRequest(
                user_id=self.user_id,
                latitude=latitude,
                longitude=longitude,
                status_text=status_text,
                accuracy=accuracy,
                visibility=visibility,  # type: ignore[arg-type]
            )
        )
        self.report_location(latitude, longitude, accuracy, pushed=True)
        await self.sync(presence)
        return presence

    def report_location(
        self,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
        *,
        pushed: bool = False,
    ) -> None:
        """Remember the newest client-reported position.

        The refresh loop writes it on its next tick unless ``pushed`` says the
        caller already did.
        """
        self.location = LastKnownLocation(latitude, longitude, accuracy)
        self._last_report = time.monotonic()
        self._pending = not pushed

    async def refresh_now(self) -> Optional[Presence]:
        if self.location is None or self.presence is None:
            return None
        try:
            presence = await self._lifecycle.update_location(
                self.user_id,
                self.location.latitude,
                self.location.longitude,
                self.location.accuracy,
            )
        except NotFound:
            logger.info("broadcast ended elsewhere, stopping refresh for user=%s", self.user_id)
            self.presence = None
            return None
        self.presence = presence
        self._pending = False
        return presence

    async def stop(self) -> None:
        """End the broadcast and its refresh timer."""
        # Late feed echoes of an ended broadcast must not restart the timer.
        ending = self.presence.id if self.presence is not None else None
        if ending is not None:
            self._ended.add(ending)
        await self._cancel_refresh()
        try:
            stopped = await self._lifecycle.stop(self.user_id)
        except UpstreamUnavailable:
            if ending is not None:
                self._ended.discard(ending)
            raise
        if stopped is not None:
            self._ended.add(stopped.id)
        self.presence = None

    async def sync(self, presence: Optional[Presence]) -> None:
        """Align the refresh timer with the latest known own presence."""
        if presence is not None and presence.id in self._ended:
            return
        if presence is None or not presence.is_active:
            self.presence = None
            await self._cancel_refresh()
            return
        if self.presence is None or presence.version >= self.presence.version:
            self.presence = presence
        if self.location is None:
            self.location = LastKnownLocation(presence.latitude, presence.longitude, presence.accuracy)
        if not self._closed and not self.refreshing and not self.is_idle:
            self._task = asyncio.create_task(self._refresh_loop(), name=f"presence-refresh:{self.user_id}")

    @property
    def is_idle(self) -> bool:
        idle_timeout = float(self._idle if self._idle is not None else settings.presence_keepalive_idle_seconds)
        if idle_timeout <= 0 or self._activity() > 0:
            return False
        return (time.monotonic() - self._last_report) > idle_timeout

    async def close(self) -> None:
        """Tear down the session without touching the stored broadcast."""
        self._closed = True
        await self._cancel_refresh()

    async def _cancel_refresh(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        if task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _refresh_loop(self) -> None:
        interval = max(0.05, float(self._interval or settings.presence_refresh_interval_seconds))
        obs_metrics.BROADCAST_SESSIONS.inc()
        try:
            while self.presence is not None:
                await asyncio.sleep(interval)
                if self.is_idle:
                    # The stored broadcast is left to expire on its own TTL.
                    logger.debug("presence refresh stopping for user=%s (idle)", self.user_id)
                    return
                if not self._pending:
                    continue
                try:
                    await self.refresh_now()
                except UpstreamUnavailable:
                    logger.warning("location refresh failed for user=%s, retrying next tick", self.user_id)
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("location refresh loop failed for user=%s", self.user_id)
        finally:
            obs_metrics.BROADCAST_SESSIONS.dec()
            if self._task is asyncio.current_task():
                self._task = None


class SessionRegistry:
    """One broadcast session per user, torn down together on shutdown.

    Connected sockets count as activity and keep an otherwise quiet refresh
    loop from idling out.
    """

    def __init__(
        self,
        lifecycle: PresenceLifecycleManager,
        *,
        interval_s: Optional[float] = None,
        idle_s: Optional[float] = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._interval = interval_s
        self._idle = idle_s
        self._sessions: Dict[str, BroadcastSession] = {}
        self._activity_counts: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def get(self, user_id: str) -> Optional[BroadcastSession]:
        return self._sessions.get(user_id)

    def activity(self, user_id: str) -> int:
        return self._activity_counts.get(user_id, 0)

    async def attach_activity(self, user_id: str) -> None:
        async with self._lock:
            self._activity_counts[user_id] = self._activity_counts.get(user_id, 0) + 1

    async def detach_activity(self, user_id: str) -> None:
        async with self._lock:
            count = self._activity_counts.get(user_id)
            if not count:
                return
            if count <= 1:
                self._activity_counts.pop(user_id, None)
            else:
                self._activity_counts[user_id] = count - 1

    async def open(self, user_id: str) -> BroadcastSession:
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = BroadcastSession(
                    user_id,
                    self._lifecycle,
                    interval_s=self._interval,
                    idle_s=self._idle,
                    activity=lambda: self.activity(user_id),
                )
                self._sessions[user_id] = session
            return session

    async def end(self, user_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is not None:
            await session.close()

    async def shutdown(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._activity_counts.clear()
        for session in sessions:
            await session.close()

    def __len__(self) -> int:
        return len(self._sessions)
