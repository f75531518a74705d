# FILE: hpr/daemon.py
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

import httpx
import uvicorn

from .codec import make_codec
from .config import OperatingMode, SchemaMode, Settings, load_settings
from .exporter import RelayMetrics, build_metrics
from .logging import configure_json_logging
from .registry import RegistryClient
from .relay import CycleResult, RelayEngine
from .service_http import create_app
from .source import ProofSourceClient
from .store import StateStore, make_state_store

logger = logging.getLogger(__name__)


class RelayDaemon:
    """
    Runs the relay engine and the status service side by side.

      - the engine loops in its own daemon thread;
      - uvicorn serves the status app on the calling thread;
      - the two share nothing but the StateStore.

    An engine crash asks the server to exit; run() then returns 1.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[StateStore] = None,
        metrics: Optional[RelayMetrics] = None,
        source_transport: Optional[httpx.BaseTransport] = None,
        registry_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings
        self.metrics = metrics or build_metrics()
        self.store = store or make_state_store(settings.state_dsn)

        self.source = ProofSourceClient(
            settings.prover_endpoint,
            timeout_s=settings.fetch_timeout_s,
            transport=source_transport,
        )
        self.registry: Optional[RegistryClient] = None
        if settings.mode is OperatingMode.RELAY:
            self.registry = RegistryClient(
                settings.registry_endpoint,
                settings.verification_key,
                timeout_s=settings.registry_timeout_s,
                transport=registry_transport,
            )

        self.engine = RelayEngine(
            self.source,
            self.store,
            make_codec(settings.schema_mode),
            mode=settings.mode,
            registry=self.registry,
            interval_s=settings.poll_interval_s,
            metrics=self.metrics,
            on_crash=self._on_engine_crash,
        )
        self.app = create_app(self.store, settings, metrics=self.metrics)
        self._server: Optional[uvicorn.Server] = None
        self._prepared = False

    def _prepare(self) -> None:
        if self._prepared:
            return
        if self.settings.clear_state_on_start:
            logger.info("clearing state left by a previous run")
            self.store.clear_all()
        self._prepared = True

    def _on_engine_crash(self, exc: BaseException) -> None:
        server = self._server
        if server is not None:
            server.should_exit = True

    @property
    def shutdown_timeout_s(self) -> float:
        """Longest a cycle can block on I/O, plus slack; the engine is joined this long."""
        s = self.settings
        return max(s.fetch_timeout_s, s.registry_timeout_s) + 5.0

    def run_once(self) -> CycleResult:
        """Run a single engine cycle without starting the HTTP server."""
        self._prepare()
        return self.engine.run_cycle()

    def run(self) -> int:
        self._prepare()
        s = self.settings
        logger.info(
            "starting relayer",
            extra={
                "mode": s.mode.value,
                "schema_mode": s.schema_mode.value,
                "interval_s": s.poll_interval_s,
                "config_origin": s.config_origin,
            },
        )
        config = uvicorn.Config(
            self.app,
            host=s.api_host,
            port=s.api_port,
            log_config=None,
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self.engine.start()
        logger.info("status service listening on http://%s:%d", s.api_host, s.api_port)
        try:
            self._server.run()
        finally:
            self.engine.stop(join=True, timeout=self.shutdown_timeout_s)
            self.close()

        if self.engine.failure is not None:
            logger.error("exiting after relay engine failure: %s", self.engine.failure)
            return 1
        return 0

    def close(self) -> None:
        self.source.close()
        if self.registry is not None:
            self.registry.close()
        self.store.close()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="hpr",
        description="Poll a light-client prover, track the latest proven state and relay new proofs.",
    )
    p.add_argument("--mode", choices=[m.value for m in OperatingMode], default=None)
    p.add_argument("--schema", choices=[m.value for m in SchemaMode], default=None)
    p.add_argument("--port", type=int, default=None, help="status service port")
    p.add_argument("--db", default=None, help="state store DSN, e.g. sqlite:///health_check.db")
    p.add_argument("--log-level", default=None)
    p.add_argument("--once", action="store_true", help="run one cycle and print its outcome")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    settings = load_settings(
        mode=args.mode,
        schema_mode=args.schema,
        api_port=args.port,
        state_dsn=args.db,
        log_level=args.log_level.upper() if args.log_level else None,
    )
    configure_json_logging(level=settings.log_level)

    daemon = RelayDaemon(settings)
    if args.once:
        try:
            res = daemon.run_once()
        finally:
            daemon.close()
        print(
            json.dumps(
                {
                    "outcome": res.outcome.value,
                    "height": res.height,
                    "fingerprint": res.fingerprint,
                    "error": str(res.error) if res.error else None,
                }
            )
        )
        return 0 if res.ok else 1
    return daemon.run()


if __name__ == "__main__":
    sys.exit(main())
