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
    db_path: str = os.getenv("MCO_DB_PATH", "mco.db")
    default_image: str = os.getenv("MCO_DEFAULT_IMAGE", "milvusdb/milvus:latest")

    # Status sync loop
    healthy_sync_interval_s: int = _env_int("MCO_HEALTHY_SYNC_INTERVAL_S", 60)
    unhealthy_sync_interval_s: int = _env_int("MCO_UNHEALTHY_SYNC_INTERVAL_S", 30)
    enable_status_sync: bool = _env_bool("MCO_ENABLE_STATUS_SYNC", True)

    # Fan-out ceiling for a single batch of checks / reconcile steps.
    max_concurrency: int = _env_int("MCO_MAX_CONCURRENCY", 16)

    # Health probes
    probe_timeout_s: float = _env_float("MCO_PROBE_TIMEOUT_S", 3.0)
    pulsar_admin_port: int = _env_int("MCO_PULSAR_ADMIN_PORT", 8080)

    # Reconcile child resources right after a PUT through the API.
    reconcile_on_apply: bool = _env_bool("MCO_RECONCILE_ON_APPLY", True)


settings = Settings()
