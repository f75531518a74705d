# FILE: hpr/config.py
from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Any, Callable, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------


class OperatingMode(str, Enum):
    """What the engine does with a changed proof."""

    RELAY = "relay"
    HEALTH_CHECK = "health_check"


class SchemaMode(str, Enum):
    """Binary layout of the public-output bytes."""

    HELIOS = "helios"
    TENDERMINT = "tendermint"


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _env_raw(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def _env_str(name: str, default: Any) -> Any:
    raw = _env_raw(name)
    return default if raw is None else raw


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_raw(name)
    return default if raw is None else raw.lower() in _TRUTHY


def _env_num(name: str, default: Any, cast: Callable[[str], Any]) -> Any:
    raw = _env_raw(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        _log.warning("ignoring %s=%r: not a valid %s", name, raw, cast.__name__)
        return default


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Read a flat settings mapping from a YAML file.

    A missing path or unreadable file yields {}. Nested values are stringified.
    """
    if not path or not os.path.isfile(path):
        return {}
    try:
        with open(path, encoding="utf-8") as fh:
            doc = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError):
        _log.warning("could not read YAML settings from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    return {
        str(k): v if v is None or isinstance(v, (str, int, float, bool)) else str(v)
        for k, v in doc.items()
    }


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    version: str = "0.1.0"
    app_name: str = "Helios Proof Relayer"

    # Indicates how this config reached the process (defaults/yaml/env).
    config_origin: str = "defaults"

    # --- Engine -----------------------------------------------------------

    mode: OperatingMode = OperatingMode.HEALTH_CHECK
    schema_mode: SchemaMode = SchemaMode.HELIOS

    prover_endpoint: str = "http://165.1.70.239:7778/"
    registry_endpoint: str = (
        "http://prover.timewave.computer:37281/api/registry/domain/ethereum-alpha"
    )
    # Verification key sent along with every forwarded proof.
    verification_key: str = (
        "0x006beadaace48146e0389403f70b490980e612c439a9294877446cd583e50fce"
    )

    fetch_timeout_s: float = 10.0
    registry_timeout_s: float = 60.0

    relay_interval_s: float = 30.0
    health_interval_s: float = 120.0

    # --- State store ------------------------------------------------------

    state_dsn: str = "sqlite:///health_check.db"
    clear_state_on_start: bool = True

    # --- Status service ---------------------------------------------------

    api_host: str = "0.0.0.0"
    api_port: int = 3000
    freshness_window_s: float = 30 * 60.0
    metrics_enabled: bool = True

    # --- Logging ----------------------------------------------------------

    log_level: str = "INFO"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    @property
    def poll_interval_s(self) -> float:
        """Sleep between cycles for the configured mode."""
        if self.mode is OperatingMode.RELAY:
            return self.relay_interval_s
        return self.health_interval_s


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings(**overrides: Any) -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by HPR_CONFIG_PATH.
      3. Environment variables (HPR_*, plus API_PORT), with bounds.
      4. Explicit keyword overrides (CLI flags).

    Mode and schema are resolved once here; they are not switchable while
    the process is running.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_doc = _load_yaml_mapping(os.environ.get("HPR_CONFIG_PATH", "").strip())
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # will enforce extra="forbid"
        origin = "yaml"

    # 2) Environment overrides
    merged["mode"] = _env_str("HPR_MODE", merged["mode"])
    merged["schema_mode"] = _env_str("HPR_SCHEMA", merged["schema_mode"])
    merged["prover_endpoint"] = _env_str("HPR_PROVER_ENDPOINT", merged["prover_endpoint"])
    merged["registry_endpoint"] = _env_str(
        "HPR_REGISTRY_ENDPOINT", merged["registry_endpoint"]
    )
    merged["verification_key"] = _env_str("HPR_VK", merged["verification_key"])

    def _positive(name: str, key: str) -> None:
        v = _env_num(name, merged[key], float)
        if v > 0.0:
            merged[key] = v

    _positive("HPR_FETCH_TIMEOUT_S", "fetch_timeout_s")
    _positive("HPR_REGISTRY_TIMEOUT_S", "registry_timeout_s")
    _positive("HPR_RELAY_INTERVAL_S", "relay_interval_s")
    _positive("HPR_HEALTH_INTERVAL_S", "health_interval_s")
    _positive("HPR_FRESHNESS_WINDOW_S", "freshness_window_s")

    merged["state_dsn"] = _env_str("HPR_STATE_DSN", merged["state_dsn"])
    merged["clear_state_on_start"] = _env_bool(
        "HPR_CLEAR_STATE_ON_START", merged["clear_state_on_start"]
    )

    merged["api_host"] = _env_str("HPR_API_HOST", merged["api_host"])
    # API_PORT is the historical name; HPR_API_PORT is accepted as well.
    port = _env_num("API_PORT", _env_num("HPR_API_PORT", merged["api_port"], int), int)
    if 0 < port < 65536:
        merged["api_port"] = port
    merged["metrics_enabled"] = _env_bool("HPR_METRICS_ENABLE", merged["metrics_enabled"])
    merged["log_level"] = _env_str("HPR_LOG_LEVEL", merged["log_level"]).upper()
    merged["version"] = _env_str("HPR_VERSION", merged["version"])

    env_keys = [k for k in os.environ if k.startswith("HPR_") and k != "HPR_CONFIG_PATH"]
    if env_keys or "API_PORT" in os.environ:
        origin = "env" if origin == "defaults" else f"{origin}+env"

    # 3) Explicit overrides
    for key, value in overrides.items():
        if value is not None:
            merged[key] = value

    merged["config_origin"] = origin
    return Settings(**merged)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings snapshot, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


__all__ = [
    "OperatingMode",
    "SchemaMode",
    "Settings",
    "load_settings",
    "get_settings",
]
