# FILE: hpr/codec.py
"""
Proof codec for the relayer.

Two layers, both pure and stateless:

  - Envelope decoding:
      The prover serves a JSON document (hex-encoded on the wire) in the
      SP1 "proof with public values" layout:

        {
          "proof": {"Groth16": {"encoded_proof": "<hex>",
                                "groth16_vkey_hash": [u8; 32], ...}},
          "public_values": {"buffer": {"data": [u8, ...]}},
          "sp1_version": "v5.0.0"
        }

      decode_raw_proof() turns it into a RawProof. The proof bytes follow the
      on-chain convention: first four bytes of the verifying-key hash, then
      the encoded proof.

  - Public-output decoding:
      The public values are a flat borsh record carrying the committed
      (root, height) pair. The record layout depends on the light client
      being proven and is selected once at startup through make_codec().
"""
from __future__ import annotations

import binascii
import json
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List

from .config import SchemaMode
from .errors import DecodeError

ROOT_LEN = 32

# Proof variants with an on-chain byte encoding, mapped to their vkey hash field.
_SNARK_VARIANTS: Dict[str, str] = {
    "Groth16": "groth16_vkey_hash",
    "Plonk": "plonk_vkey_hash",
}


# ------------------------------
# Data models
# ------------------------------


@dataclass(frozen=True, slots=True)
class RawProof:
    """Proof payload and public-output bytes of one fetched proof."""

    proof_bytes: bytes
    public_values: bytes


@dataclass(frozen=True, slots=True)
class PublicOutputs:
    """Chain-state commitment carried in the public values."""

    height: int
    root: bytes


# ------------------------------
# Hex helpers
# ------------------------------


def strip_hex_prefix(s: str) -> str:
    s = s.strip()
    if s[:2] in ("0x", "0X"):
        return s[2:]
    return s


def decode_hex(s: str, *, what: str = "value") -> bytes:
    """Decode a hex string (optional 0x prefix); DecodeError on bad input."""
    try:
        return binascii.unhexlify(strip_hex_prefix(s))
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"{what} is not valid hex: {exc}") from exc


def _byte_list(value: Any, *, what: str) -> bytes:
    if isinstance(value, str):
        return decode_hex(value, what=what)
    if not isinstance(value, list):
        raise DecodeError(f"{what} must be a byte array")
    try:
        return bytes(value)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"{what} contains non-byte values") from exc


# ------------------------------
# Envelope decoding
# ------------------------------


def _proof_bytes(proof: Any) -> bytes:
    if not isinstance(proof, dict) or len(proof) != 1:
        raise DecodeError("proof must be an object with exactly one variant")
    variant, body = next(iter(proof.items()))
    vkey_field = _SNARK_VARIANTS.get(variant)
    if vkey_field is None:
        raise DecodeError(f"proof variant {variant!r} has no on-chain byte encoding")
    if not isinstance(body, dict):
        raise DecodeError(f"{variant} proof body must be an object")

    encoded = body.get("encoded_proof", "")
    if not isinstance(encoded, str):
        raise DecodeError("encoded_proof must be a hex string")
    if not encoded:
        # Mock proofs carry no bytes.
        return b""

    vkey_hash = _byte_list(body.get(vkey_field), what=vkey_field)
    if len(vkey_hash) < 4:
        raise DecodeError(f"{vkey_field} is too short")
    return vkey_hash[:4] + decode_hex(encoded, what="encoded_proof")


def _public_values(pv: Any) -> bytes:
    if isinstance(pv, dict):
        buf = pv.get("buffer")
        if not isinstance(buf, dict) or "data" not in buf:
            raise DecodeError("public_values.buffer.data is missing")
        return _byte_list(buf["data"], what="public_values")
    if isinstance(pv, (str, list)):
        return _byte_list(pv, what="public_values")
    raise DecodeError("public_values has an unsupported shape")


def decode_raw_proof(blob: bytes) -> RawProof:
    """
    Decode the prover's JSON envelope into a RawProof.

    Raises DecodeError on malformed or overly nested JSON, unknown proof
    variants and byte arrays that are not bytes.
    """
    try:
        doc = json.loads(blob)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(f"proof envelope is not valid JSON: {exc}") from exc
    except RecursionError as exc:
        raise DecodeError("proof envelope is nested too deeply") from exc
    if not isinstance(doc, dict):
        raise DecodeError("proof envelope must be a JSON object")
    if "proof" not in doc or "public_values" not in doc:
        raise DecodeError("proof envelope lacks proof or public_values")

    return RawProof(
        proof_bytes=_proof_bytes(doc["proof"]),
        public_values=_public_values(doc["public_values"]),
    )


def proof_fingerprint(raw: RawProof) -> str:
    """Hex of the proof bytes; used only for change detection."""
    return raw.proof_bytes.hex()


# ------------------------------
# Public-output strategies
# ------------------------------


class PublicOutputsCodec(ABC):
    """Decodes public-output bytes of one fixed layout."""

    mode: SchemaMode

    @abstractmethod
    def decode(self, public_values: bytes) -> PublicOutputs:
        ...


class HeliosOutputsCodec(PublicOutputsCodec):
    """borsh `{ root: [u8; 32], height: u64 }`"""

    mode = SchemaMode.HELIOS
    _layout = struct.Struct("<32sQ")

    def decode(self, public_values: bytes) -> PublicOutputs:
        if len(public_values) != self._layout.size:
            raise DecodeError(
                f"helios outputs must be {self._layout.size} bytes, got {len(public_values)}"
            )
        root, height = self._layout.unpack(public_values)
        return PublicOutputs(height=height, root=root)


class TendermintOutputsCodec(PublicOutputsCodec):
    """borsh `{ root: Vec<u8>, height: u64 }` with a 32-byte root."""

    mode = SchemaMode.TENDERMINT
    _len = struct.Struct("<I")
    _height = struct.Struct("<Q")

    def decode(self, public_values: bytes) -> PublicOutputs:
        if len(public_values) < self._len.size:
            raise DecodeError("tendermint outputs truncated before root length")
        (root_len,) = self._len.unpack_from(public_values, 0)
        if root_len != ROOT_LEN:
            raise DecodeError(f"tendermint root must be {ROOT_LEN} bytes, got {root_len}")
        expected = self._len.size + ROOT_LEN + self._height.size
        if len(public_values) != expected:
            raise DecodeError(
                f"tendermint outputs must be {expected} bytes, got {len(public_values)}"
            )
        root = bytes(public_values[self._len.size : self._len.size + ROOT_LEN])
        (height,) = self._height.unpack_from(public_values, self._len.size + ROOT_LEN)
        return PublicOutputs(height=height, root=root)


_CODECS = {
    SchemaMode.HELIOS: HeliosOutputsCodec,
    SchemaMode.TENDERMINT: TendermintOutputsCodec,
}


def make_codec(mode: SchemaMode) -> PublicOutputsCodec:
    """Factory for the public-output codec of a schema mode."""
    try:
        return _CODECS[SchemaMode(mode)]()
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unsupported schema mode: {mode}") from exc


def decode_public_outputs(public_values: bytes, mode: SchemaMode) -> PublicOutputs:
    return make_codec(mode).decode(public_values)


__all__ = [
    "RawProof",
    "PublicOutputs",
    "PublicOutputsCodec",
    "HeliosOutputsCodec",
    "TendermintOutputsCodec",
    "decode_hex",
    "decode_raw_proof",
    "decode_public_outputs",
    "make_codec",
    "proof_fingerprint",
]
