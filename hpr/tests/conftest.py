from __future__ import annotations

import json
import struct
from datetime import datetime, timezone
from typing import List

import pytest
from prometheus_client import CollectorRegistry

from hpr.codec import RawProof
from hpr.errors import TransportError
from hpr.exporter import build_metrics
from hpr.store import InMemoryStateStore

VKEY_HASH = bytes(range(1, 33))
ROOT_A = bytes([0xAA]) * 32
ROOT_B = bytes([0xBB]) * 32


def make_envelope(
    encoded_proof: bytes,
    public_values: bytes,
    *,
    variant: str = "Groth16",
    vkey_hash: bytes = VKEY_HASH,
) -> bytes:
    vkey_field = "groth16_vkey_hash" if variant == "Groth16" else "plonk_vkey_hash"
    doc = {
        "proof": {
            variant: {
                "public_inputs": ["1", "2"],
                "encoded_proof": encoded_proof.hex(),
                "raw_proof": "",
                vkey_field: list(vkey_hash),
            }
        },
        "public_values": {"buffer": {"data": list(public_values)}},
        "sp1_version": "v5.0.0",
        "tee_proof": None,
    }
    return json.dumps(doc).encode()


def helios_outputs(height: int, root: bytes = ROOT_A) -> bytes:
    return root + struct.pack("<Q", height)


def tendermint_outputs(height: int, root: bytes = ROOT_A) -> bytes:
    return struct.pack("<I", len(root)) + root + struct.pack("<Q", height)


class FakeSource:
    """Returns queued results in order; the last one repeats."""

    def __init__(self, *results):
        self.results: List[object] = list(results)
        self.calls = 0

    def fetch(self) -> RawProof:
        self.calls += 1
        r = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(r, BaseException):
            raise r
        return r


class FakeRegistry:
    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.attempts: List[RawProof] = []
        self.sent: List[RawProof] = []

    def send(self, raw: RawProof) -> None:
        self.attempts.append(raw)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransportError("registry returned HTTP 502")
        self.sent.append(raw)


class CountingStore(InMemoryStateStore):
    def __init__(self):
        super().__init__()
        self.snapshot_writes = 0
        self.fingerprint_writes = 0

    def put_snapshot(self, snapshot):
        self.snapshot_writes += 1
        super().put_snapshot(snapshot)

    def put_fingerprint(self, fp):
        self.fingerprint_writes += 1
        super().put_fingerprint(fp)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now) -> FixedClock:
    return FixedClock(now)


@pytest.fixture
def metrics():
    return build_metrics(CollectorRegistry())


@pytest.fixture
def counting_store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def raw_a() -> RawProof:
    return RawProof(proof_bytes=b"\x01\x02\x03proof-a", public_values=helios_outputs(100, ROOT_A))


@pytest.fixture
def raw_b() -> RawProof:
    return RawProof(proof_bytes=b"\x01\x02\x03proof-b", public_values=helios_outputs(101, ROOT_B))
