"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sidequests.domain.presence.exceptions import (
	InvalidVisibility,
	NotFound,
	ParticipationForbidden,
	PresenceError,
	UpstreamUnavailable,
)
from sidequests.infra.rate_limit import RateLimitExceeded
from sidequests.obs.logging import current_request_id

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
	(NotFound, 404),
	(InvalidVisibility, 422),
	(ParticipationForbidden, 403),
	(UpstreamUnavailable, 503),
)


def get_request_id(request: Request) -> str:
	return getattr(request.state, "request_id", None) or current_request_id()


def status_for(exc: PresenceError) -> int:
	for error_type, status_code in _STATUS_BY_ERROR:
		if isinstance(exc, error_type):
			return status_code
	return 400


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		payload = {"detail": exc.detail, "request_id": get_request_id(request)}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		payload = {"detail": "validation_error", "errors": exc.errors(), "request_id": get_request_id(request)}
		return JSONResponse(status_code=422, content=payload)

	@app.exception_handler(PresenceError)
	async def presence_exc_handler(request: Request, exc: PresenceError):  # type: ignore[override]
		status_code = status_for(exc)
		if status_code >= 500:
			logger.warning("upstream unavailable path=%s reason=%s", request.url.path, exc.reason)
		payload = {"detail": exc.reason, "request_id": get_request_id(request)}
		return JSONResponse(status_code=status_code, content=payload)

	@app.exception_handler(RateLimitExceeded)
	async def rate_limit_handler(request: Request, exc: RateLimitExceeded):  # type: ignore[override]
		payload = {"detail": exc.reason, "request_id": get_request_id(request)}
		return JSONResponse(status_code=429, content=payload)
