# FILE: hpr/middleware.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .exporter import RelayMetrics
from .logging import ensure_request_id, unbind


@dataclass
class RequestMetricsConfig:
    """
    Configuration for RequestMetricsMiddleware.

    Only coarse metadata is recorded (route, method, status, latency); the
    status service has no request bodies worth logging.
    """

    request_id_header: str = "X-Request-Id"
    expose_request_id: bool = True
    # Known routes keep their path as label; everything else is "other".
    known_routes: Dict[str, str] = field(
        default_factory=lambda: {"/": "root", "/health": "health", "/metrics": "metrics"}
    )
    # Routes that are not logged per request (scrapers poll them constantly).
    quiet_routes: tuple = ("metrics",)


class RequestMetricsMiddleware(BaseHTTPMiddleware):
    """
    Request id + Prometheus counter/histogram + one structured log line.

    Metrics:
      - Counter:   hpr_http_requests_total{route, status}
      - Histogram: hpr_http_request_latency_seconds{route}
    """

    def __init__(
        self,
        app,
        metrics: Optional[RelayMetrics] = None,
        *,
        config: Optional[RequestMetricsConfig] = None,
        logger_name: str = "hpr.http",
    ):
        super().__init__(app)
        self._cfg = config or RequestMetricsConfig()
        self._metrics = metrics
        self._log = logging.getLogger(logger_name)

    def _route_label(self, path: str) -> str:
        return self._cfg.known_routes.get(path, "other")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        route = self._route_label(path)
        rid = ensure_request_id({k.lower(): v for k, v in request.headers.items()})
        t0 = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            if self._cfg.expose_request_id:
                response.headers.setdefault(self._cfg.request_id_header, rid)
            return response
        finally:
            elapsed = time.perf_counter() - t0
            if self._metrics is not None:
                self._metrics.http_requests.labels(route=route, status=str(status_code)).inc()
                self._metrics.http_latency.labels(route=route).observe(elapsed)
            if route not in self._cfg.quiet_routes:
                self._log.info(
                    "http.finish",
                    extra={
                        "req_id": rid,
                        "route": route,
                        "path": path,
                        "method": request.method,
                        "status": status_code,
                        "latency_ms": round(elapsed * 1000.0, 3),
                    },
                )
            unbind("req_id")


__all__ = ["RequestMetricsConfig", "RequestMetricsMiddleware"]
