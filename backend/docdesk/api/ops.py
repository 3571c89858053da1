"""Operations endpoints providing health checks and metrics."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from docdesk.infra import postgres
from docdesk.infra.redis import redis_client
from docdesk.settings import settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["ops"])


async def _redis_ok(timeout: float = 0.2) -> bool:
	try:
		await asyncio.wait_for(redis_client.ping(), timeout=timeout)
	except (RedisError, OSError, asyncio.TimeoutError):
		LOGGER.warning("Redis readiness check failed", exc_info=True)
		return False
	return True


async def _postgres_ok(timeout: float = 0.3) -> bool:
	try:
		pool = await postgres.get_pool()
		async with pool.acquire() as conn:
			await asyncio.wait_for(conn.execute("SELECT 1"), timeout=timeout)
	except (AssertionError,) + postgres.STORE_ERRORS:
		LOGGER.warning("Postgres readiness query failed", exc_info=True)
		return False
	return True


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok"}


@router.get("/health/ready")
async def health_ready() -> Response:
	redis_state = await _redis_ok()
	postgres_state = await _postgres_ok()
	ok = redis_state and postgres_state
	return JSONResponse(
		content={"status": "ok" if ok else "degraded", "redis": redis_state, "postgres": postgres_state},
		status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
	)


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	if not settings.obs_metrics_public:
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="forbidden")
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
