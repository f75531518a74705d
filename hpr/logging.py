# FILE: hpr/logging.py
"""
Structured JSON logging for the relayer.

Every record becomes one compact JSON object:

  identity   schema, service, version, env, instance
  record     ts, lvl, logger, msg
  envelope   req_id, mode, schema_mode, outcome, height, fingerprint,
             route, path, method, status, latency_ms
  error      exc_type, exc_message, stack (when include_stack)
  meta       any other `extra=` attribute

Envelope values come from the record first and from the bound context
second. The relay thread binds mode/schema_mode once; the HTTP middleware
binds req_id per request.
"""
from __future__ import annotations

import contextvars
import json
import logging
import math
import os
import socket
import sys
import traceback
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional


@dataclass(frozen=True)
class _Identity:
    schema: str
    service: str
    version: str
    env: str
    instance: str

    @classmethod
    def from_env(cls) -> "_Identity":
        e = os.environ
        return cls(
            schema=e.get("HPR_LOG_SCHEMA", "hpr.log.v1"),
            service=e.get("HPR_SERVICE", "hpr"),
            version=e.get("HPR_BUILD_VERSION") or e.get("HPR_VERSION") or "0.0.0",
            env=e.get("HPR_ENV") or e.get("ENV") or "dev",
            instance=e.get("HPR_INSTANCE") or socket.gethostname() or "unknown",
        )


def _max_field_from_env() -> int:
    try:
        return max(256, int(os.environ.get("HPR_LOG_MAX_FIELD", "2048")))
    except ValueError:
        return 2048


_IDENTITY = _Identity.from_env()
_MAX_FIELD = _max_field_from_env()
_INCLUDE_STACK = os.environ.get("HPR_LOG_INCLUDE_STACK", "1") == "1"

ENVELOPE_FIELDS = (
    "req_id",
    "mode",
    "schema_mode",
    "outcome",
    "height",
    "fingerprint",
    "route",
    "path",
    "method",
    "status",
    "latency_ms",
)

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "color_message", "taskName"}


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

_ctx: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar(
    "hpr_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Add fields to the logging context of the current thread or task. None values are skipped."""
    merged = dict(_ctx.get())
    merged.update((str(k), v) for k, v in fields.items() if v is not None)
    _ctx.set(merged)


def unbind(*keys: str) -> None:
    _ctx.set({k: v for k, v in _ctx.get().items() if k not in keys})


def reset() -> None:
    _ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_ctx.get())


# ---------------------------------------------------------------------------
# Value shaping
# ---------------------------------------------------------------------------


def _clip(v: Any) -> Any:
    """Truncate long strings (proof hex can be large), recursing into containers."""
    if isinstance(v, str):
        return v if len(v) <= _MAX_FIELD else v[:_MAX_FIELD] + "...<truncated>"
    if isinstance(v, Mapping):
        return {str(k): _clip(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_clip(x) for x in v]
    if isinstance(v, float) and not math.isfinite(v):
        return None
    return v


def _now_rfc3339() -> str:
    ts = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return ts.replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


class JSONFormatter(logging.Formatter):
    """One compact JSON object per record; see the module docstring for fields."""

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def _envelope(self, record: logging.LogRecord) -> Dict[str, Any]:
        ctx = _ctx.get()
        out: Dict[str, Any] = {}
        for name in ENVELOPE_FIELDS:
            v = getattr(record, name, None)
            if v is None:
                v = ctx.get(name)
            v = _clip(v)
            if v is not None:
                out[name] = v
        return out

    def _error(self, record: logging.LogRecord) -> Dict[str, Any]:
        if not (record.exc_info and self.include_stack):
            return {}
        etype, evalue, etb = record.exc_info
        return {
            "exc_type": getattr(etype, "__name__", str(etype)),
            "exc_message": str(evalue)[:_MAX_FIELD],
            "stack": "".join(traceback.format_exception(etype, evalue, etb))[:_MAX_FIELD],
        }

    @staticmethod
    def _meta(record: logging.LogRecord, taken: Iterable[str]) -> Dict[str, Any]:
        skip = _RECORD_ATTRS.union(taken)
        return {
            k: _clip(v)
            for k, v in record.__dict__.items()
            if k not in skip and not k.startswith("_")
        }

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        evt: Dict[str, Any] = asdict(_IDENTITY)
        evt.update(
            ts=_now_rfc3339(),
            lvl=record.levelname,
            logger=record.name,
            msg=record.getMessage(),
        )
        evt.update(self._envelope(record))
        evt.update(self._error(record))
        meta = self._meta(record, ENVELOPE_FIELDS)
        if meta:
            evt["meta"] = meta
        return json.dumps(evt, ensure_ascii=False, separators=(",", ":"), default=str)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """Route root (and uvicorn) logging through a single JSON stream handler."""
    lvl = logging.getLevelName((level or "INFO").upper())
    if not isinstance(lvl, int):
        lvl = logging.INFO

    handler = logging.StreamHandler(stream=stream or sys.stderr)
    handler.setFormatter(JSONFormatter(include_stack=include_stack))
    handler.setLevel(lvl)

    targets = [logging.getLogger()]
    if include_uvicorn:
        targets.extend(logging.getLogger(n) for n in _UVICORN_LOGGERS)
    for lg in targets:
        lg.handlers.clear()
        lg.addHandler(handler)
        lg.setLevel(lvl)
        if lg.name != "root":
            lg.propagate = False

    # httpx logs every request at INFO; the engine logs its own summary.
    logging.getLogger("httpx").setLevel(max(lvl, logging.WARNING))
    return targets[0]


def ensure_request_id(headers: Optional[Mapping[str, str]] = None) -> str:
    """Reuse the caller's X-Request-Id or mint one, and bind it as req_id."""
    rid = (headers or {}).get("x-request-id") or uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


__all__ = [
    "ENVELOPE_FIELDS",
    "JSONFormatter",
    "bind",
    "configure_json_logging",
    "context",
    "ensure_request_id",
    "reset",
    "unbind",
]
