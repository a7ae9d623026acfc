import os
from dataclasses import dataclass, replace
from typing import Dict, Mapping, Optional

DEFAULT_DB_FILE = "groupcast.db"
DEFAULT_PROVIDER_URL = "http://localhost:8080"

# Values stored in the config table; all strings, like every other row there.
DEFAULT_CONFIG = {
    "poll_interval_seconds": "5",
    "rate_limit_seconds": "2",
    "worker_pool_size": "4",
    "stuck_timeout_seconds": "0",   # 0 disables the reconciliation sweep
    "directory_ttl_seconds": "300",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())


@dataclass(frozen=True)
class WorkerConfig:
    db_path: str = DEFAULT_DB_FILE
    provider_url: str = DEFAULT_PROVIDER_URL
    api_key: str = ""
    poll_interval: float = 5.0
    rate_limit: float = 2.0
    worker_pool_size: int = 4
    stuck_timeout: Optional[float] = None
    max_backoff: float = 60.0
    request_timeout: float = 30.0
    directory_ttl: float = 300.0


def _number(settings: Mapping[str, str], key: str, cast=float):
    raw = settings[key]
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Config {key} must be a number, got {raw!r}")
    if value < 0:
        raise ValueError(f"Config {key} cannot be negative")
    return value


def validate_config_value(key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    cast = int if key == "worker_pool_size" else float
    _number({key: value}, key, cast)
    if key == "worker_pool_size" and int(value) < 1:
        raise ValueError("Config worker_pool_size must be at least 1")


def db_path_from_env(environ: Optional[Mapping[str, str]] = None) -> str:
    environ = os.environ if environ is None else environ
    return environ.get("GROUPCAST_DB", DEFAULT_DB_FILE)


def build_worker_config(
    stored: Optional[Dict[str, str]] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides,
) -> WorkerConfig:
    """Merge defaults, the config table and the environment (in that order)."""
    environ = os.environ if environ is None else environ
    settings = dict(DEFAULT_CONFIG)
    settings.update({k: v for k, v in (stored or {}).items() if k in ALLOWED_CONFIG_KEYS})

    stuck = _number(settings, "stuck_timeout_seconds")
    cfg = WorkerConfig(
        db_path=db_path_from_env(environ),
        provider_url=environ.get("EVOLUTION_API_URL", DEFAULT_PROVIDER_URL),
        api_key=environ.get("EVOLUTION_API_KEY", ""),
        poll_interval=_number(settings, "poll_interval_seconds"),
        rate_limit=_number(settings, "rate_limit_seconds"),
        worker_pool_size=max(1, _number(settings, "worker_pool_size", int)),
        stuck_timeout=stuck or None,
        directory_ttl=_number(settings, "directory_ttl_seconds"),
    )
    return replace(cfg, **overrides) if overrides else cfg
