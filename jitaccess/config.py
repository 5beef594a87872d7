"""
Configuration parsing and validation for the orchestrator, worker and web app.

Intent:
    Provide a single place to read environment variables that control retry
    policy, approval timeouts, storage backend selection and provider wiring.

Why:
    Centralising configuration keeps defaults and validation explicit and lets
    tests exercise config behaviour without booting the worker process.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Optional
from urllib.parse import urlparse


@dataclass(frozen=True)
class OrchestratorConfig:
    authorize_max_attempts: int = 5
    backoff_seconds: int = 2
    backoff_ceiling_seconds: int = 300
    revoke_alert_threshold: int = 10
    revoke_max_attempts: Optional[int] = None  # None: retry revoke forever
    approval_timeout_seconds: int = 3600
    notify_max_attempts: int = 5
    default_duration_seconds: int = 3600
    min_duration_seconds: int = 60
    max_duration_seconds: int = 43200
    lease_seconds: int = 45


@dataclass(frozen=True)
class AppConfig:
    env: str
    store_backend: str  # "memory" | "db"
    database_url: str
    local_provider_id: str
    webhook_url: str
    poll_interval_seconds: float
    catalog_session_ttl_seconds: int
    embedded_worker: bool
    sync_token: str
    role_refresh_seconds: int
    orchestrator: OrchestratorConfig


def _int_env(name: str, default: int, *, minimum: int = 1, maximum: int = 86400 * 7) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from None
    if value < minimum or value > maximum:
        raise ValueError(f"{name} out of range ({minimum}..{maximum}), got: {value}")
    return value


def _optional_int_env(name: str) -> Optional[int]:
    """Parse an optional positive integer; unset or 0 means "no limit"."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    value = _int_env(name, 0, minimum=0)
    return value or None


_TRUTHY = {"1", "true", "yes", "on"}


def _truthy_env(name: str, *, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def is_prod_like(env: Optional[str] = None) -> bool:
    value = (env if env is not None else os.getenv("JIT_ENV", "dev")) or ""
    return value.strip().lower() in {"prod", "production", "stage", "staging"}


def load_orchestrator_config() -> OrchestratorConfig:
    """
    Parse retry and lifecycle policy from the environment.

    Behavior:
        - Attempt counts and delays must be positive integers.
        - `JIT_REVOKE_MAX_ATTEMPTS` unset or 0 keeps revoke retrying forever.
        - The backoff ceiling must not be smaller than the base delay.
        - Duration bounds must be ordered (min <= default <= max).
    """
    cfg = OrchestratorConfig(
        authorize_max_attempts=_int_env("JIT_AUTHORIZE_MAX_ATTEMPTS", 5, maximum=100),
        backoff_seconds=_int_env("JIT_BACKOFF_SECONDS", 2, maximum=3600),
        backoff_ceiling_seconds=_int_env("JIT_BACKOFF_CEILING_SECONDS", 300, maximum=86400),
        revoke_alert_threshold=_int_env("JIT_REVOKE_ALERT_THRESHOLD", 10, maximum=10000),
        revoke_max_attempts=_optional_int_env("JIT_REVOKE_MAX_ATTEMPTS"),
        approval_timeout_seconds=_int_env("JIT_APPROVAL_TIMEOUT_SECONDS", 3600),
        notify_max_attempts=_int_env("JIT_NOTIFY_MAX_ATTEMPTS", 5, maximum=100),
        default_duration_seconds=_int_env("JIT_DEFAULT_DURATION_SECONDS", 3600),
        min_duration_seconds=_int_env("JIT_MIN_DURATION_SECONDS", 60),
        max_duration_seconds=_int_env("JIT_MAX_DURATION_SECONDS", 43200),
        lease_seconds=_int_env("JIT_LEASE_SECONDS", 45, maximum=3600),
    )
    if cfg.backoff_ceiling_seconds < cfg.backoff_seconds:
        raise ValueError("JIT_BACKOFF_CEILING_SECONDS must be >= JIT_BACKOFF_SECONDS")
    if not (cfg.min_duration_seconds <= cfg.default_duration_seconds <= cfg.max_duration_seconds):
        raise ValueError("duration bounds must satisfy min <= default <= max")
    if cfg.revoke_max_attempts is not None and cfg.revoke_max_attempts < cfg.revoke_alert_threshold:
        raise ValueError("JIT_REVOKE_MAX_ATTEMPTS must be >= JIT_REVOKE_ALERT_THRESHOLD")
    return cfg


def _validate_webhook_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ValueError("JIT_WEBHOOK_URL must be an absolute http(s) URL")


def load_app_config() -> AppConfig:
    """
    Parse process-level configuration for the worker and web entry points.

    Behavior:
        - `JIT_STORE` selects "memory" (default) or "db".
        - The db backend needs `JIT_DATABASE_URL` or `DATABASE_URL`.
        - `JIT_WEBHOOK_URL` is optional; when set it must be an http(s) URL.
        - `JIT_EMBEDDED_WORKER` runs the worker loop inside the web process
          (default on for the memory store, which other processes cannot see).
        - `JIT_SYNC_TOKEN`, when set, is the bearer token catalog sync
          drivers must present.
        - `JIT_ROLE_REFRESH_SECONDS` bounds how long another process's role
          edits may stay invisible when snapshots are kept in Postgres.
        - `JIT_ROLE_REFRESH_SECONDS` bounds how stale another process's role
          edits may look when snapshots are kept in Postgres.
    """
    env = (os.getenv("JIT_ENV") or "dev").strip().lower()
    store_backend = (os.getenv("JIT_STORE") or "memory").strip().lower()
    if store_backend not in {"memory", "db"}:
        raise ValueError("JIT_STORE must be 'memory' or 'db'")
    database_url = (os.getenv("JIT_DATABASE_URL") or os.getenv("DATABASE_URL") or "").strip()
    if store_backend == "db" and not database_url:
        raise ValueError("JIT_STORE=db requires JIT_DATABASE_URL or DATABASE_URL")

    webhook_url = (os.getenv("JIT_WEBHOOK_URL") or "").strip()
    if webhook_url:
        _validate_webhook_url(webhook_url)

    raw_poll = os.getenv("JIT_POLL_INTERVAL", "0.5")
    try:
        poll_interval = float(raw_poll)
    except ValueError:
        raise ValueError(f"JIT_POLL_INTERVAL must be a number, got: {raw_poll!r}") from None
    if poll_interval <= 0:
        raise ValueError("JIT_POLL_INTERVAL must be positive")

    return AppConfig(
        env=env,
        store_backend=store_backend,
        database_url=database_url,
        local_provider_id=(os.getenv("JIT_LOCAL_PROVIDER_ID") or "local").strip(),
        webhook_url=webhook_url,
        poll_interval_seconds=poll_interval,
        catalog_session_ttl_seconds=_int_env("JIT_CATALOG_SESSION_TTL_SECONDS", 900),
        embedded_worker=_truthy_env("JIT_EMBEDDED_WORKER", default=store_backend == "memory"),
        sync_token=(os.getenv("JIT_SYNC_TOKEN") or "").strip(),
        role_refresh_seconds=_int_env("JIT_ROLE_REFRESH_SECONDS", 5, minimum=0, maximum=3600),
        orchestrator=load_orchestrator_config(),
    )


def ensure_secure_config_on_startup() -> None:
    """Fail fast on unsafe production configuration.

    Checks (prod/staging only; dev stays permissive):
    - Executions must be persisted in Postgres, not process memory.
    - DATABASE_URL must not explicitly disable TLS.
    - Webhook notifications must use https.
    """
    if not is_prod_like():
        return

    store_backend = (os.getenv("JIT_STORE") or "memory").strip().lower()
    if store_backend != "db":
        raise SystemExit(
            "Refusing to start: JIT_STORE must be 'db' in production/staging; in-memory executions do not survive restarts."
        )

    dsn = os.getenv("JIT_DATABASE_URL") or os.getenv("DATABASE_URL") or ""
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: database URL contains sslmode=disable in production. Use sslmode=require."
        )

    webhook = (os.getenv("JIT_WEBHOOK_URL") or "").strip().lower()
    if webhook.startswith("http://"):
        raise SystemExit("Refusing to start: JIT_WEBHOOK_URL must use https in production (got http).")


__all__ = [
    "AppConfig",
    "OrchestratorConfig",
    "ensure_secure_config_on_startup",
    "is_prod_like",
    "load_app_config",
    "load_orchestrator_config",
]
