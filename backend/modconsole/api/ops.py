"""Operations endpoints providing health checks and metrics."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["ops"])


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok"}


@router.get("/health/ready")
async def health_ready(request: Request) -> Response:
	runtime = getattr(request.app.state, "moderation", None)
	if runtime is None:
		return JSONResponse({"status": "starting"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
	try:
		await runtime.config_store.get()
	except Exception as exc:  # noqa: BLE001 - reported as not ready
		LOGGER.warning("configuration store readiness check failed", exc_info=True)
		return JSONResponse(
			{"status": "degraded", "configuration": {"ok": False, "error": str(exc)}},
			status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
		)
	return JSONResponse({"status": "ok", "configuration": {"ok": True}})


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	payload = generate_latest()
	return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
