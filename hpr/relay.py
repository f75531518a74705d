# FILE: hpr/relay.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .codec import PublicOutputs, PublicOutputsCodec, RawProof, proof_fingerprint
from .config import OperatingMode
from .errors import DecodeError, HprError, StorageError, TransportError
from .exporter import RelayMetrics
from .logging import bind
from .registry import RegistryClient
from .source import ProofSourceClient
from .store import ForwardedProofFingerprint, ProofSnapshot, StateStore, utcnow

logger = logging.getLogger(__name__)


class CycleOutcome(str, Enum):
    FORWARDED = "forwarded"
    PERSISTED = "persisted"
    UNCHANGED = "unchanged"
    FETCH_FAILED = "fetch_failed"
    DECODE_FAILED = "decode_failed"
    FORWARD_FAILED = "forward_failed"
    STORAGE_FAILED = "storage_failed"


@dataclass(frozen=True)
class CycleResult:
    outcome: CycleOutcome
    fingerprint: Optional[str] = None
    height: Optional[int] = None
    error: Optional[HprError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _short(fp: Optional[str]) -> Optional[str]:
    return fp[:16] if fp else fp


class RelayEngine:
    """
    Poll, deduplicate, persist and (in relay mode) forward proofs.

    One cycle:
      FETCH -> DECODE_FINGERPRINT -> COMPARE -> (FORWARD_AND_PERSIST | SKIP)

    and the loop sleeps once between cycles. Fetch, decode, forward and
    storage failures end the cycle without touching stored state; the loop
    keeps going. Anything that is not an HprError is a crash and ends the
    loop.

    Threading model:
      - a single daemon thread runs run_forever();
      - the only state shared with other threads is the StateStore;
      - stop() is idempotent and can optionally join the thread.
    """

    def __init__(
        self,
        source: ProofSourceClient,
        store: StateStore,
        codec: PublicOutputsCodec,
        *,
        mode: OperatingMode = OperatingMode.HEALTH_CHECK,
        registry: Optional[RegistryClient] = None,
        interval_s: float = 120.0,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[RelayMetrics] = None,
        on_crash: Optional[Callable[[BaseException], None]] = None,
    ):
        if mode is OperatingMode.RELAY and registry is None:
            raise ValueError("relay mode requires a registry client")
        self._source = source
        self._store = store
        self._codec = codec
        self._mode = mode
        self._registry = registry
        self._interval_s = float(interval_s)
        self._clock = clock
        self._metrics = metrics
        self._on_crash = on_crash

        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.RLock()
        self._failure: Optional[BaseException] = None

    @property
    def mode(self) -> OperatingMode:
        return self._mode

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def failure(self) -> Optional[BaseException]:
        """Exception that ended the background loop, if any."""
        return self._failure

    # ------------------------------------------------------------------ #
    # One cycle
    # ------------------------------------------------------------------ #

    def run_cycle(self) -> CycleResult:
        """Run one poll cycle without sleeping."""
        t0 = time.perf_counter()
        try:
            raw = self._source.fetch()
        except TransportError as exc:
            return self._finish(CycleResult(CycleOutcome.FETCH_FAILED, error=exc))
        finally:
            if self._metrics is not None:
                self._metrics.fetch_latency.observe(time.perf_counter() - t0)

        fp = proof_fingerprint(raw)

        try:
            previous = self._store.get_fingerprint()
        except StorageError as exc:
            return self._finish(
                CycleResult(CycleOutcome.STORAGE_FAILED, fingerprint=fp, error=exc)
            )
        if previous is not None and previous.fingerprint == fp:
            return self._finish(CycleResult(CycleOutcome.UNCHANGED, fingerprint=fp))

        if previous is None:
            logger.info("no previous proof recorded", extra={"fingerprint": _short(fp)})
        else:
            logger.info("proof has changed", extra={"fingerprint": _short(fp)})

        try:
            outputs = self._codec.decode(raw.public_values)
        except DecodeError as exc:
            return self._finish(
                CycleResult(CycleOutcome.DECODE_FAILED, fingerprint=fp, error=exc)
            )

        if self._mode is OperatingMode.RELAY:
            return self._forward_and_persist(raw, fp, outputs)
        return self._persist(fp, outputs, CycleOutcome.PERSISTED)

    def _forward_and_persist(
        self, raw: RawProof, fp: str, outputs: PublicOutputs
    ) -> CycleResult:
        if self._registry is None:
            raise RuntimeError("relay mode requires a registry client")
        try:
            self._registry.send(raw)
        except TransportError as exc:
            if self._metrics is not None:
                self._metrics.forwards.labels(result="fail").inc()
            return self._finish(
                CycleResult(
                    CycleOutcome.FORWARD_FAILED,
                    fingerprint=fp,
                    height=outputs.height,
                    error=exc,
                )
            )
        if self._metrics is not None:
            self._metrics.forwards.labels(result="ok").inc()
        return self._persist(fp, outputs, CycleOutcome.FORWARDED)

    def _persist(self, fp: str, outputs: PublicOutputs, outcome: CycleOutcome) -> CycleResult:
        now = self._clock()
        snapshot = ProofSnapshot(height=outputs.height, root=outputs.root, observed_at=now)
        record = ForwardedProofFingerprint(fingerprint=fp, observed_at=now)
        try:
            if outcome is CycleOutcome.FORWARDED:
                # The registry accepted this proof: its fingerprint is recorded
                # even if the snapshot write below fails.
                self._store.put_fingerprint(record)
                self._store.put_snapshot(snapshot)
            else:
                self._store.put_snapshot(snapshot)
                self._store.put_fingerprint(record)
        except StorageError as exc:
            return self._finish(
                CycleResult(
                    CycleOutcome.STORAGE_FAILED,
                    fingerprint=fp,
                    height=outputs.height,
                    error=exc,
                )
            )
        if self._metrics is not None:
            self._metrics.snapshot_height.set(outputs.height)
            self._metrics.last_success_ts.set(now.timestamp())
        return self._finish(CycleResult(outcome, fingerprint=fp, height=outputs.height))

    def _finish(self, res: CycleResult) -> CycleResult:
        if self._metrics is not None:
            self._metrics.cycles.labels(outcome=res.outcome.value).inc()

        extra = {
            "outcome": res.outcome.value,
            "height": res.height,
            "fingerprint": _short(res.fingerprint),
        }
        if res.error is not None:
            logger.warning("cycle aborted: %s", res.error, extra=extra)
        elif res.outcome is CycleOutcome.UNCHANGED:
            logger.info("proof unchanged; nothing to do", extra=extra)
        else:
            logger.info("accepted new proof", extra=extra)
        return res

    # ------------------------------------------------------------------ #
    # Loop
    # ------------------------------------------------------------------ #

    def run_forever(self, stop: threading.Event) -> None:
        """Run cycles until `stop` is set, waiting `interval_s` after each."""
        bind(mode=self._mode.value, schema_mode=self._codec.mode.value)
        logger.info("relay loop started", extra={"interval_s": self._interval_s})
        while not stop.is_set():
            self.run_cycle()
            stop.wait(timeout=self._interval_s)
        logger.info("relay loop stopped")

    def start(self) -> None:
        """Start the background loop if it is not already running."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._failure = None
            self._thread = threading.Thread(
                target=self._run_loop,
                name="hpr-relay-engine",
                daemon=True,
            )
            self._thread.start()

    def stop(self, *, join: bool = True, timeout: Optional[float] = 5.0) -> None:
        """
        Signal the loop to stop.

        If join=True, wait (up to `timeout` seconds) for the thread to exit.
        """
        with self._lock:
            t = self._thread
            if t is None:
                return
            self._stop.set()
        if join:
            t.join(timeout=timeout)
        with self._lock:
            self._thread = None

    def is_alive(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        try:
            self.run_forever(self._stop)
        except Exception as exc:
            self._failure = exc
            logger.critical("relay engine crashed", exc_info=True)
            if self._on_crash is not None:
                self._on_crash(exc)


__all__ = ["CycleOutcome", "CycleResult", "RelayEngine"]
