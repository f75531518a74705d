# FILE: hpr/errors.py
from __future__ import annotations


class HprError(RuntimeError):
    """Base error for the relayer; caught at the poll-cycle boundary."""


class TransportError(HprError):
    """Network or HTTP failure talking to the prover or the registry."""


class DecodeError(HprError, ValueError):
    """Malformed proof envelope or public-output bytes."""


class StorageError(HprError):
    """Persistence layer I/O or serialization failure."""


__all__ = ["HprError", "TransportError", "DecodeError", "StorageError"]
