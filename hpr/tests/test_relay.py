import threading
import time
from datetime import timedelta

import httpx
import pytest

from conftest import ROOT_A, ROOT_B, FakeRegistry, FakeSource, helios_outputs
from hpr.codec import HeliosOutputsCodec, RawProof, TendermintOutputsCodec, proof_fingerprint
from hpr.config import OperatingMode
from hpr.errors import DecodeError, StorageError, TransportError
from hpr.relay import CycleOutcome, RelayEngine
from hpr.source import ProofSourceClient
from hpr.store import ForwardedProofFingerprint, InMemoryStateStore, SQLiteStateStore


def _health_engine(source, store, clock, **kw):
    return RelayEngine(
        source, store, HeliosOutputsCodec(), mode=OperatingMode.HEALTH_CHECK, clock=clock, **kw
    )


def _fetch_failures(metrics):
    v = metrics.registry.get_sample_value("hpr_relay_cycles_total", {"outcome": "fetch_failed"})
    return v or 0


def _relay_engine(source, store, registry, clock, **kw):
    return RelayEngine(
        source,
        store,
        HeliosOutputsCodec(),
        mode=OperatingMode.RELAY,
        registry=registry,
        clock=clock,
        **kw,
    )


def test_health_mode_persists_snapshot_and_fingerprint(counting_store, clock, now, raw_a):
    engine = _health_engine(FakeSource(raw_a), counting_store, clock)
    res = engine.run_cycle()

    assert res.outcome is CycleOutcome.PERSISTED
    assert res.height == 100
    snap = counting_store.get_snapshot()
    assert (snap.height, snap.root, snap.observed_at) == (100, ROOT_A, now)
    assert counting_store.get_fingerprint() == ForwardedProofFingerprint(
        proof_fingerprint(raw_a), now
    )


def test_identical_fetches_write_once(counting_store, clock, raw_a):
    source = FakeSource(raw_a)
    engine = _health_engine(source, counting_store, clock)

    assert engine.run_cycle().outcome is CycleOutcome.PERSISTED
    for _ in range(3):
        assert engine.run_cycle().outcome is CycleOutcome.UNCHANGED

    assert source.calls == 4
    assert counting_store.snapshot_writes == 1
    assert counting_store.fingerprint_writes == 1


def test_one_write_per_change(counting_store, clock, raw_a, raw_b):
    source = FakeSource(raw_a, raw_a, raw_b, raw_b, raw_a)
    engine = _health_engine(source, counting_store, clock)
    outcomes = [engine.run_cycle().outcome for _ in range(5)]

    assert outcomes == [
        CycleOutcome.PERSISTED,
        CycleOutcome.UNCHANGED,
        CycleOutcome.PERSISTED,
        CycleOutcome.UNCHANGED,
        CycleOutcome.PERSISTED,
    ]
    assert counting_store.fingerprint_writes == 3
    assert counting_store.get_snapshot().height == 100


def test_unchanged_cycle_is_logged(counting_store, clock, raw_a, caplog):
    engine = _health_engine(FakeSource(raw_a), counting_store, clock)
    engine.run_cycle()
    with caplog.at_level("INFO", logger="hpr.relay"):
        engine.run_cycle()
    assert any("unchanged" in r.getMessage() for r in caplog.records)


def test_relay_mode_forwards_only_changes(counting_store, clock, raw_a, raw_b):
    registry = FakeRegistry()
    engine = _relay_engine(FakeSource(raw_a, raw_a, raw_b), counting_store, registry, clock)

    outcomes = [engine.run_cycle().outcome for _ in range(3)]
    assert outcomes == [CycleOutcome.FORWARDED, CycleOutcome.UNCHANGED, CycleOutcome.FORWARDED]
    assert registry.sent == [raw_a, raw_b]
    assert counting_store.get_fingerprint().fingerprint == proof_fingerprint(raw_b)
    assert counting_store.get_snapshot().root == ROOT_B


def test_forward_failure_keeps_fingerprint_and_resends(counting_store, clock, raw_a, raw_b):
    counting_store.put_fingerprint(ForwardedProofFingerprint(proof_fingerprint(raw_a), clock()))
    counting_store.fingerprint_writes = 0
    registry = FakeRegistry(fail_times=1)
    engine = _relay_engine(FakeSource(raw_b), counting_store, registry, clock)

    first = engine.run_cycle()
    assert first.outcome is CycleOutcome.FORWARD_FAILED
    assert isinstance(first.error, TransportError)
    assert counting_store.get_fingerprint().fingerprint == proof_fingerprint(raw_a)
    assert counting_store.fingerprint_writes == 0

    second = engine.run_cycle()
    assert second.outcome is CycleOutcome.FORWARDED
    assert registry.attempts == [raw_b, raw_b]
    assert registry.sent == [raw_b]
    assert counting_store.get_fingerprint().fingerprint == proof_fingerprint(raw_b)


def test_fetch_failure_changes_nothing(counting_store, clock):
    engine = _health_engine(FakeSource(TransportError("boom")), counting_store, clock)
    res = engine.run_cycle()
    assert res.outcome is CycleOutcome.FETCH_FAILED
    assert counting_store.get_snapshot() is None
    assert counting_store.fingerprint_writes == 0


def test_non_success_http_status_aborts_cycle_and_loop_continues(counting_store, clock, metrics):
    source = ProofSourceClient(
        "http://prover.test/", transport=httpx.MockTransport(lambda req: httpx.Response(503))
    )
    engine = _health_engine(source, counting_store, clock, interval_s=0.01, metrics=metrics)
    engine.start()
    deadline = time.monotonic() + 5.0
    while _fetch_failures(metrics) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert engine.is_alive()
    engine.stop()
    source.close()

    assert _fetch_failures(metrics) >= 2
    assert counting_store.snapshot_writes == 0
    assert counting_store.fingerprint_writes == 0
    assert engine.failure is None


def test_decode_failure_changes_nothing(counting_store, clock):
    bad = RawProof(proof_bytes=b"\x01", public_values=b"\x00" * 39)
    engine = _health_engine(FakeSource(bad), counting_store, clock)
    res = engine.run_cycle()
    assert res.outcome is CycleOutcome.DECODE_FAILED
    assert isinstance(res.error, DecodeError)
    assert counting_store.snapshot_writes == 0
    assert counting_store.fingerprint_writes == 0


def test_schema_mismatch_is_decode_failure(counting_store, clock, raw_a):
    engine = RelayEngine(
        FakeSource(raw_a), counting_store, TendermintOutputsCodec(), clock=clock
    )
    assert engine.run_cycle().outcome is CycleOutcome.DECODE_FAILED
    assert counting_store.get_fingerprint() is None


class _BrokenStore(InMemoryStateStore):
    def __init__(self, fail_reads=False, fail_writes=False):
        super().__init__()
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes

    def get_fingerprint(self):
        if self.fail_reads:
            raise StorageError("disk I/O error")
        return super().get_fingerprint()

    def put_snapshot(self, snapshot):
        if self.fail_writes:
            raise StorageError("disk full")
        super().put_snapshot(snapshot)


@pytest.mark.parametrize("kw", [{"fail_reads": True}, {"fail_writes": True}])
def test_storage_failure_is_contained(clock, raw_a, kw):
    store = _BrokenStore(**kw)
    engine = _health_engine(FakeSource(raw_a), store, clock)
    res = engine.run_cycle()
    assert res.outcome is CycleOutcome.STORAGE_FAILED
    assert isinstance(res.error, StorageError)
    if kw.get("fail_writes"):
        assert store.get_fingerprint() is None


def test_relay_mode_requires_registry(counting_store, clock, raw_a):
    with pytest.raises(ValueError):
        RelayEngine(
            FakeSource(raw_a), counting_store, HeliosOutputsCodec(), mode=OperatingMode.RELAY
        )


def test_snapshot_timestamps_follow_clock(counting_store, clock, raw_a, raw_b, now):
    engine = _health_engine(FakeSource(raw_a, raw_b), counting_store, clock)
    engine.run_cycle()
    clock.now = now + timedelta(minutes=2)
    engine.run_cycle()
    assert counting_store.get_snapshot().observed_at == now + timedelta(minutes=2)


def test_metrics_track_outcomes(counting_store, clock, raw_a, metrics):
    registry = FakeRegistry(fail_times=1)
    engine = _relay_engine(FakeSource(raw_a), counting_store, registry, clock, metrics=metrics)
    for _ in range(3):
        engine.run_cycle()

    reg = metrics.registry
    assert reg.get_sample_value("hpr_relay_cycles_total", {"outcome": "forward_failed"}) == 1
    assert reg.get_sample_value("hpr_relay_cycles_total", {"outcome": "forwarded"}) == 1
    assert reg.get_sample_value("hpr_relay_cycles_total", {"outcome": "unchanged"}) == 1
    assert reg.get_sample_value("hpr_relay_forward_total", {"result": "ok"}) == 1
    assert reg.get_sample_value("hpr_relay_snapshot_height") == 100


def test_unexpected_exception_crashes_loop(counting_store, clock):
    crashed = threading.Event()
    seen = []

    def on_crash(exc):
        seen.append(exc)
        crashed.set()

    engine = _health_engine(
        FakeSource(RuntimeError("poisoned")), counting_store, clock, interval_s=0.01, on_crash=on_crash
    )
    engine.start()
    assert crashed.wait(timeout=5.0)
    engine.stop()
    assert isinstance(engine.failure, RuntimeError)
    assert seen == [engine.failure]


def test_run_forever_stops_on_event(counting_store, clock, raw_a):
    source = FakeSource(raw_a)
    engine = _health_engine(source, counting_store, clock, interval_s=60.0)
    stop = threading.Event()
    t = threading.Thread(target=engine.run_forever, args=(stop,))
    t.start()
    deadline = time.monotonic() + 5.0
    while source.calls < 1 and time.monotonic() < deadline:
        time.sleep(0.01)
    stop.set()
    t.join(timeout=5.0)
    assert not t.is_alive()
    assert source.calls == 1


def test_forwarded_proof_is_not_resent_when_snapshot_write_fails(clock, raw_a):
    store = _BrokenStore(fail_writes=True)
    registry = FakeRegistry()
    engine = _relay_engine(FakeSource(raw_a), store, registry, clock)

    outcomes = [engine.run_cycle().outcome for _ in range(3)]
    assert outcomes == [CycleOutcome.STORAGE_FAILED, CycleOutcome.UNCHANGED, CycleOutcome.UNCHANGED]
    assert registry.sent == [raw_a]
    assert store.get_fingerprint().fingerprint == proof_fingerprint(raw_a)


def test_unstorable_height_is_forwarded_once(tmp_path, clock):
    raw = RawProof(proof_bytes=b"\x07big", public_values=helios_outputs(2**63, ROOT_A))
    store = SQLiteStateStore(str(tmp_path / "state.db"))
    registry = FakeRegistry()
    engine = _relay_engine(FakeSource(raw), store, registry, clock)
    try:
        outcomes = [engine.run_cycle().outcome for _ in range(3)]
        assert outcomes[0] is CycleOutcome.STORAGE_FAILED
        assert outcomes[1:] == [CycleOutcome.UNCHANGED, CycleOutcome.UNCHANGED]
        assert registry.sent == [raw]
        assert store.get_snapshot() is None
    finally:
        store.close()


def test_relay_cycle_without_registry_is_a_programming_error(counting_store, clock, raw_a):
    engine = _relay_engine(FakeSource(raw_a), counting_store, FakeRegistry(), clock)
    engine._registry = None
    with pytest.raises(RuntimeError, match="registry"):
        engine.run_cycle()
    assert counting_store.fingerprint_writes == 0
