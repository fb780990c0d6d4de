from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("XDEPLOY_DB_PATH", "xdeploy.db")
    docker_network: str = os.getenv("XDEPLOY_DOCKER_NETWORK", "xdeploy")
    run_controller: bool = _env_bool("XDEPLOY_RUN_CONTROLLER", True)

    # Work scheduling
    workers: int = _env_int("XDEPLOY_WORKERS", 4)
    resync_interval_s: float = _env_float("XDEPLOY_RESYNC_INTERVAL_S", 30.0)
    backoff_base_s: float = _env_float("XDEPLOY_BACKOFF_BASE_S", 1.0)
    backoff_cap_s: float = _env_float("XDEPLOY_BACKOFF_CAP_S", 300.0)
    # A broken spec only changes when the requester edits it; retry slowly.
    invalid_spec_retry_s: float = _env_float("XDEPLOY_INVALID_SPEC_RETRY_S", 60.0)

    # Rollouts
    readiness_poll_s: float = _env_float("XDEPLOY_READINESS_POLL_S", 2.0)
    rollout_ready_timeout_s: float = _env_float("XDEPLOY_ROLLOUT_READY_TIMEOUT_S", 120.0)

    # Driver
    driver_timeout_s: int = _env_int("XDEPLOY_DRIVER_TIMEOUT_S", 10)
    probe_http: bool = _env_bool("XDEPLOY_PROBE_HTTP", True)

    # HTTP API
    api_host: str = os.getenv("XDEPLOY_API_HOST", "0.0.0.0")
    api_port: int = _env_int("XDEPLOY_API_PORT", 8000)


settings = Settings()
