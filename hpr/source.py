# FILE: hpr/source.py
from __future__ import annotations

import logging
from typing import Optional

import httpx

from .codec import RawProof, decode_hex, decode_raw_proof
from .errors import DecodeError, TransportError

logger = logging.getLogger(__name__)


class ProofSourceClient:
    """
    Fetches the latest proof from the prover endpoint.

    One GET per fetch(), bounded by `timeout_s`. The body is a hex string
    wrapping the JSON envelope understood by codec.decode_raw_proof().
    Every failure (transport, status, hex, envelope) surfaces as
    TransportError chained to its cause. Retries are the engine's job.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_s: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoint = endpoint
        self._client = httpx.Client(timeout=timeout_s, transport=transport)

    def fetch(self) -> RawProof:
        logger.debug("fetching proof from %s", self.endpoint)
        try:
            resp = self._client.get(self.endpoint)
        except httpx.HTTPError as exc:
            raise TransportError(f"proof fetch failed: {exc}") from exc

        if not resp.is_success:
            raise TransportError(
                f"prover returned HTTP {resp.status_code}"
            )

        body = resp.text
        logger.debug("received hex body of length %d", len(body))
        try:
            return decode_raw_proof(decode_hex(body, what="prover response"))
        except DecodeError as exc:
            raise TransportError(f"prover response could not be decoded: {exc}") from exc

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ProofSourceClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["ProofSourceClient"]
