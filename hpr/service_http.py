# FILE: hpr/service_http.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from pydantic import BaseModel, Field
from starlette.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .errors import StorageError
from .exporter import RelayMetrics, build_metrics
from .middleware import RequestMetricsMiddleware
from .store import StateStore, utcnow

logger = logging.getLogger(__name__)

USAGE_BANNER = "Helios Proof Relayer API\nUse /health to get latest health check data"


class FreshnessStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NO_DATA = "no_data"


class HealthCheckResponse(BaseModel):
    current_height: int = Field(..., description="Height of the latest snapshot")
    current_root: str = Field(..., description="Hex-encoded root of the latest snapshot")
    timestamp: str = Field(..., description="RFC-3339 time the snapshot was observed")
    status: FreshnessStatus


def classify_freshness(
    observed_at: datetime, now: datetime, window: timedelta
) -> FreshnessStatus:
    """Healthy while the snapshot is younger than `window`."""
    if observed_at > now - window:
        return FreshnessStatus.HEALTHY
    return FreshnessStatus.UNHEALTHY


def create_app(
    store: StateStore,
    settings: Optional[Settings] = None,
    *,
    metrics: Optional[RelayMetrics] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """
    Build the read-only status service over `store`.

    The app never writes to the store; /health takes the store's lock only
    for the duration of one read.
    """
    settings = settings or get_settings()
    if metrics is None:
        metrics = build_metrics(CollectorRegistry())
    window = timedelta(seconds=settings.freshness_window_s)

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        docs_url=None,
        redoc_url=None,
    )

    app.add_middleware(RequestMetricsMiddleware, metrics=metrics)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/", response_class=PlainTextResponse)
    def root() -> str:
        return USAGE_BANNER

    @app.get("/health", response_model=HealthCheckResponse)
    def health() -> JSONResponse:
        logger.info("received request for latest health check data")
        try:
            snap = store.get_snapshot()
        except StorageError:
            logger.error("failed to read health check data", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="storage failure",
            )

        now = clock()
        if snap is None:
            logger.info("no health check data available")
            body = HealthCheckResponse(
                current_height=0,
                current_root="",
                timestamp=now.isoformat(),
                status=FreshnessStatus.NO_DATA,
            )
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content=body.model_dump(mode="json"),
            )

        verdict = classify_freshness(snap.observed_at, now, window)
        body = HealthCheckResponse(
            current_height=snap.height,
            current_root=snap.root.hex(),
            timestamp=snap.observed_at.isoformat(),
            status=verdict,
        )
        logger.info(
            "returning health check data",
            extra={"height": snap.height, "outcome": verdict.value},
        )
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(mode="json"))

    if settings.metrics_enabled:

        @app.get("/metrics")
        def prom_metrics() -> Response:
            return Response(generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = [
    "FreshnessStatus",
    "HealthCheckResponse",
    "USAGE_BANNER",
    "classify_freshness",
    "create_app",
]
