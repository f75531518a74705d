# FILE: hpr/exporter.py
# Prometheus metric handles for the relayer.
#
# Label sets are small and fixed: cycle outcomes, forward results and
# status-service routes. Handles are built per registry so tests can use a
# fresh CollectorRegistry and the daemon can share one between the relay
# thread and the HTTP app.

from __future__ import annotations

from typing import NamedTuple, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram


class RelayMetrics(NamedTuple):
    """
    Metric handles used by the engine and the status service.

      - cycles                : cycles by outcome
      - forwards              : registry forwards by result (ok / fail)
      - fetch_latency         : prover fetch latency histogram
      - snapshot_height       : height of the last persisted snapshot
      - last_success_ts       : unix time of the last cycle that accepted a proof
      - http_requests         : status-service requests by route and status
      - http_latency          : status-service latency by route
    """

    registry: CollectorRegistry
    cycles: Counter
    forwards: Counter
    fetch_latency: Histogram
    snapshot_height: Gauge
    last_success_ts: Gauge
    http_requests: Counter
    http_latency: Histogram


def build_metrics(registry: Optional[CollectorRegistry] = None) -> RelayMetrics:
    reg = registry if registry is not None else REGISTRY
    return RelayMetrics(
        registry=reg,
        cycles=Counter(
            "hpr_relay_cycles_total",
            "Relay cycles by outcome",
            ["outcome"],
            registry=reg,
        ),
        forwards=Counter(
            "hpr_relay_forward_total",
            "Registry forwards by result",
            ["result"],
            registry=reg,
        ),
        fetch_latency=Histogram(
            "hpr_relay_fetch_latency_seconds",
            "Prover fetch latency (seconds)",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=reg,
        ),
        snapshot_height=Gauge(
            "hpr_relay_snapshot_height",
            "Height of the last persisted snapshot",
            registry=reg,
        ),
        last_success_ts=Gauge(
            "hpr_relay_last_success_timestamp",
            "Unix time of the last accepted proof",
            registry=reg,
        ),
        http_requests=Counter(
            "hpr_http_requests_total",
            "Status service requests",
            ["route", "status"],
            registry=reg,
        ),
        http_latency=Histogram(
            "hpr_http_request_latency_seconds",
            "Status service request latency (seconds)",
            ["route"],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1.0),
            registry=reg,
        ),
    )


__all__ = ["RelayMetrics", "build_metrics"]
