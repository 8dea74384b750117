"""Socket.IO namespace streaming a viewer's live nearby view."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Set

import socketio

from sidequests.container import Services, get_services
from sidequests.domain.presence.exceptions import PresenceError
from sidequests.domain.presence.live_view import LiveView
from sidequests.domain.presence.models import Presence
from sidequests.domain.presence.schemas import PresenceOut
from sidequests.infra.auth import parse_socket_identity
from sidequests.infra.rate_limit import allow as rate_allow
from sidequests.obs import metrics as obs_metrics
from sidequests.settings import settings

logger = logging.getLogger(__name__)


def _presence_payload(presence: Optional[Presence]) -> Optional[dict]:
    if presence is None:
        return None
    return PresenceOut.from_domain(presence).model_dump(mode="json")


def _coords(data: Optional[dict]) -> Optional[tuple[float, float]]:
    if not isinstance(data, dict):
        return None
    try:
        return float(data["lat"]), float(data["lng"])
    except (KeyError, TypeError, ValueError):
        return None


def _radius(data: Optional[dict]) -> float:
    raw = data.get("radius") if isinstance(data, dict) else None
    try:
        radius = float(raw) if raw is not None else float(settings.nearby_default_radius_miles)
    except (TypeError, ValueError):
        radius = float(settings.nearby_default_radius_miles)
    return min(max(radius, float(settings.nearby_min_radius_miles)), float(settings.nearby_max_radius_miles))


class SpontaneousNamespace(socketio.AsyncNamespace):
    def __init__(self, services: Callable[[], Services] = get_services) -> None:
        super().__init__("/spontaneous")
        self._services = services
        self.users: Dict[str, str] = {}
        self.views: Dict[str, LiveView] = {}
        self._sids_by_user: Dict[str, Set[str]] = {}

    async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
        obs_metrics.socket_connected(self.namespace)
        try:
            user = parse_socket_identity(environ, auth)
        except ValueError:
            obs_metrics.socket_disconnected(self.namespace)
            raise ConnectionRefusedError("unauthorized") from None
        self.users[sid] = user.id
        self._sids_by_user.setdefault(user.id, set()).add(sid)
        await self._services().sessions.attach_activity(user.id)
        logger.info("spontaneous connect sid=%s user=%s", sid, user.id)
        await self.emit("sys.ok", {"me": {"id": user.id}}, room=sid)
        coords = _coords(auth)
        if coords is not None:
            await self._open_view(sid, user.id, coords[0], coords[1], _radius(auth))

    async def on_disconnect(self, sid: str, reason: Optional[str] = None) -> None:
        obs_metrics.socket_disconnected(self.namespace)
        user_id = self.users.pop(sid, None)
        view = self.views.pop(sid, None)
        if view is not None:
            await view.close()
        if user_id is None:
            return
        await self._services().sessions.detach_activity(user_id)
        sids = self._sids_by_user.get(user_id, set())
        sids.discard(sid)
        if not sids:
            self._sids_by_user.pop(user_id, None)
            # The stored broadcast stays live until stop or expiry; only the timer goes.
            await self._services().sessions.end(user_id)
        logger.info("spontaneous disconnect sid=%s user=%s", sid, user_id)

    async def on_spontaneous_viewport(self, sid: str, data: dict) -> None:
        obs_metrics.socket_event(self.namespace, "viewport")
        user_id = self.users.get(sid)
        coords = _coords(data)
        if user_id is None or coords is None:
            await self.emit("sys.warn", {"code": "invalid_payload"}, room=sid)
            return
        view = self.views.get(sid)
        if view is None:
            await self._open_view(sid, user_id, coords[0], coords[1], _radius(data))
            return
        await view.move(coords[0], coords[1], _radius(data))
        await self._emit_snapshot(sid, view)

    async def on_spontaneous_go_live(self, sid: str, data: dict) -> None:
        obs_metrics.socket_event(self.namespace, "go_live")
        user_id = self.users.get(sid)
        coords = _coords(data)
        if user_id is None or coords is None:
            await self.emit("sys.warn", {"code": "invalid_payload"}, room=sid)
            return
        session = await self._services().sessions.open(user_id)
        try:
            presence = await session.start(
                coords[0],
                coords[1],
                accuracy=data.get("accuracy"),
                status_text=data.get("status_text"),
                visibility=data.get("visibility"),
            )
        except PresenceError as exc:
            await self.emit("sys.warn", {"code": exc.reason}, room=sid)
            return
        await self.emit("spontaneous.ack", {"ok": True, "presence": _presence_payload(presence)}, room=sid)

    async def on_spontaneous_location(self, sid: str, data: dict) -> None:
        obs_metrics.socket_event(self.namespace, "location")
        user_id = self.users.get(sid)
        coords = _coords(data)
        if user_id is None or coords is None:
            await self.emit("sys.warn", {"code": "invalid_payload"}, room=sid)
            return
        if not await rate_allow("presence_location_socket", user_id, limit=settings.location_update_rate_limit):
            await self.emit("sys.warn", {"code": "rate_limited"}, room=sid)
            return
        session = await self._services().sessions.open(user_id)
        accuracy = data.get("accuracy")
        try:
            if session.is_broadcasting:
                session.report_location(coords[0], coords[1], accuracy)
                await session.refresh_now()
            else:
                presence = await self._services().lifecycle.update_location(user_id, coords[0], coords[1], accuracy)
                session.report_location(coords[0], coords[1], accuracy, pushed=True)
                await session.sync(presence)
        except PresenceError as exc:
            await self.emit("sys.warn", {"code": exc.reason}, room=sid)
            return
        await self.emit("spontaneous.ack", {"ok": True}, room=sid)

    async def on_spontaneous_stop(self, sid: str, data: Optional[dict] = None) -> None:
        obs_metrics.socket_event(self.namespace, "stop")
        user_id = self.users.get(sid)
        if user_id is None:
            return
        services = self._services()
        session = services.sessions.get(user_id)
        try:
            if session is not None:
                await session.stop()
            else:
                await services.lifecycle.stop(user_id)
        except PresenceError as exc:
            await self.emit("sys.warn", {"code": exc.reason}, room=sid)
            return
        await self.emit("spontaneous.ack", {"ok": True}, room=sid)

    async def _open_view(self, sid: str, user_id: str, latitude: float, longitude: float, radius: float) -> None:
        services = self._services()

        async def forward(kind: str, payload: object) -> None:
            if kind == "remove":
                await self.emit("spontaneous.remove", {"id": payload}, room=sid)
            else:
                await self.emit("spontaneous.upsert", _presence_payload(payload), room=sid)  # type: ignore[arg-type]

        async def forward_self(presence: Optional[Presence]) -> None:
            session = services.sessions.get(user_id)
            if session is not None:
                await session.sync(presence)
            await self.emit("spontaneous.me", {"presence": _presence_payload(presence)}, room=sid)

        view = LiveView(
            user_id,
            nearby=services.nearby,
            lifecycle=services.lifecycle,
            resolver=services.resolver,
            latitude=latitude,
            longitude=longitude,
            radius_miles=radius,
            on_change=forward,
            on_self_change=forward_self,
        )
        self.views[sid] = view
        await view.open()
        await self._emit_snapshot(sid, view)

    async def _emit_snapshot(self, sid: str, view: LiveView) -> None:
        await self.emit(
            "spontaneous.snapshot",
            {
                "presences": [_presence_payload(p) for p in view.presences],
                "me": _presence_payload(view.my_presence),
            },
            room=sid,
        )
