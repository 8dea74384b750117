"""Operations endpoints: health check and Prometheus scrape."""

from __future__ import annotations

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from sidequests.infra.postgres import get_pool
from sidequests.infra.redis import redis_client
from sidequests.settings import settings

router = APIRouter(prefix="", tags=["ops"])


@router.get("/health")
async def health() -> Response:
	checks = {"postgres": "ok", "redis": "ok"}
	try:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute("SELECT 1")
	except Exception:
		checks["postgres"] = "down"
	try:
		await redis_client.ping()
	except Exception:
		checks["redis"] = "down"
	healthy = all(value == "ok" for value in checks.values())
	payload = {"status": "ok" if healthy else "degraded", "service": settings.service_name, "checks": checks}
	status_code = status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE
	return JSONResponse(content=payload, status_code=status_code)


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
