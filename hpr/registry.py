# FILE: hpr/registry.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .codec import RawProof
from .errors import TransportError

logger = logging.getLogger(__name__)


def build_payload(raw: RawProof, verification_key: str) -> Dict[str, Any]:
    """Registry body: proof and public values as plain hex, vk as configured."""
    return {
        "proof": raw.proof_bytes.hex(),
        "public_values": raw.public_values.hex(),
        "vk": verification_key,
    }


class RegistryClient:
    """
    Forwards proofs to the downstream registry.

    send() succeeds only on a 2xx response; anything else raises
    TransportError so the caller keeps its dedup state and retries.
    """

    def __init__(
        self,
        endpoint: str,
        verification_key: str,
        *,
        timeout_s: Optional[float] = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.verification_key = verification_key
        self._client = httpx.Client(timeout=timeout_s, transport=transport)

    def send(self, raw: RawProof) -> None:
        payload = build_payload(raw, self.verification_key)
        try:
            resp = self._client.post(self.endpoint, json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(f"registry post failed: {exc}") from exc

        logger.info("registry responded", extra={"status": resp.status_code})
        logger.debug("registry response body: %s", resp.text)
        if not resp.is_success:
            raise TransportError(f"registry returned HTTP {resp.status_code}")

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["RegistryClient", "build_payload"]
