"""ASGI middleware binding request context to structured logs."""

from __future__ import annotations

import time
from typing import Optional
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from modconsole.obs import logging as obs_logging


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	if route and getattr(route, "path", None):
		return route.path  # type: ignore[return-value]
	return request.url.path


class RequestContextMiddleware(BaseHTTPMiddleware):
	"""Tag every log line of a request with its id and acting admin."""

	def __init__(self, app) -> None:
		super().__init__(app)
		self._logger = obs_logging.get_logger("modconsole.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		request_id = request.headers.get("X-Request-Id") or str(uuid4())
		request.state.request_id = request_id
		tokens = obs_logging.bind_context(
			request_id=request_id,
			actor_id=request.headers.get("X-Admin-Id"),
			operation=f"{request.method} {request.url.path}",
		)
		start = time.perf_counter()
		status_code = 500
		response: Optional[Response] = None
		try:
			response = await call_next(request)
			status_code = response.status_code
		finally:
			self._logger.info(
				"http_request",
				extra={
					"status": status_code,
					"method": request.method,
					"route": _route_template(request),
					"latency_ms": round((time.perf_counter() - start) * 1000, 3),
				},
			)
			obs_logging.reset_context(tokens)
		response.headers.setdefault("X-Request-Id", request_id)
		return response


def install(app) -> None:
	app.add_middleware(RequestContextMiddleware)
