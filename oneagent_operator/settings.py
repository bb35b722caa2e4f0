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
    # Cluster access
    namespace: str = os.getenv("OAO_NAMESPACE", "dynatrace")
    in_cluster: bool = _env_bool("OAO_IN_CLUSTER", True)
    kube_context: str | None = os.getenv("OAO_KUBE_CONTEXT")

    # Status API
    api_host: str = os.getenv("OAO_API_HOST", "0.0.0.0")
    api_port: int = _env_int("OAO_API_PORT", 8080)
    log_level: str = os.getenv("OAO_LOG_LEVEL", "info")

    # Dispatch
    workers: int = _env_int("OAO_WORKERS", 2)
    resync_interval_s: int = _env_int("OAO_RESYNC_INTERVAL_S", 60)
    watch_timeout_s: int = _env_int("OAO_WATCH_TIMEOUT_S", 300)
    backoff_base_s: float = _env_float("OAO_BACKOFF_BASE_S", 1.0)
    backoff_max_s: float = _env_float("OAO_BACKOFF_MAX_S", 1000.0)

    # Reconcile timing
    splay_s: int = _env_int("OAO_SPLAY_S", 10)
    mid_requeue_s: int = _env_int("OAO_MID_REQUEUE_S", 5 * 60)
    long_requeue_s: int = _env_int("OAO_LONG_REQUEUE_S", 30 * 60)

    # Dynatrace API
    http_timeout_s: float = _env_float("OAO_HTTP_TIMEOUT_S", 15.0)


settings = Settings()
