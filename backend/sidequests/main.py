"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sidequests import container
from sidequests.api import events, ops, presence
from sidequests.api.errors import install_error_handlers
from sidequests.domain.presence.sockets import SpontaneousNamespace
from sidequests.domain.presence.sweeper import run_presence_sweeper
from sidequests.infra import postgres
from sidequests.infra.schema import ensure_schema
from sidequests.obs import init as obs_init
from sidequests.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = await postgres.init_pool()
	await ensure_schema(pool)
	services = container.get_services()
	worker_tasks: list[asyncio.Task] = []
	if settings.presence_sweeper_enabled:
		worker_tasks.append(
			asyncio.create_task(
				run_presence_sweeper(services.presence_store, settings.presence_sweep_interval_seconds),
				name="presence-sweeper",
			)
		)
	try:
		yield
	finally:
		for task in worker_tasks:
			task.cancel()
		for task in worker_tasks:
			with suppress(asyncio.CancelledError):
				await task
		await services.sessions.shutdown()
		await postgres.close_pool()


app = FastAPI(title="Sidequests Presence Engine", lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

allow_origins = list(settings.cors_allow_origins or [])
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True.
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

app.include_router(presence.router, tags=["spontaneous"])
app.include_router(events.router, tags=["events"])
app.include_router(ops.router)

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
sio.register_namespace(SpontaneousNamespace())
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
