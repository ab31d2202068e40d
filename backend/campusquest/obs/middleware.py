"""HTTP access logging and request metrics for the REST surface."""

from __future__ import annotations

import time
from typing import Optional
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from campusquest.obs import logging as obs_logging
from campusquest.obs import metrics
from campusquest.settings import settings

# Probe and scrape traffic is counted but not logged.
QUIET_PATHS = frozenset({"/health/live", "/health/ready", "/metrics"})


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	path = getattr(route, "path", None)
	return path or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app, *, enabled: bool = True) -> None:
		super().__init__(app)
		self._enabled = enabled
		self._logger = obs_logging.get_logger("campusquest.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		if not (settings.obs_enabled and self._enabled):
			return await call_next(request)

		request_id = request.headers.get("X-Request-Id") or uuid4().hex
		request.state.request_id = request_id
		tokens = obs_logging.bind_context(request_id=request_id, route=request.url.path)
		started = time.perf_counter()
		response: Optional[Response] = None
		try:
			response = await call_next(request)
		except Exception:
			self._logger.exception("http_request_error", extra={"method": request.method})
			raise
		finally:
			# The route is only resolved once routing has run.
			route = _route_template(request)
			elapsed = time.perf_counter() - started
			status_code = response.status_code if response is not None else 500
			metrics.observe_request(route, request.method, status_code, elapsed)
			if request.url.path not in QUIET_PATHS:
				self._logger.info(
					"http_request",
					extra={
						"method": request.method,
						"status": status_code,
						"latency_ms": round(elapsed * 1000, 3),
					},
				)
			obs_logging.reset_context(tokens)

		response.headers.setdefault("X-Request-Id", request_id)
		return response


def install(app, *, enabled: bool = True) -> None:
	app.add_middleware(ObservabilityMiddleware, enabled=enabled)
