"""
Grant worker: advances due executions (notify, timeout, authorize, expire, revoke).

Intent:
    Provide a minimal, framework-free worker loop around
    `GrantOrchestrator.run_once`. Several workers may run against the same
    Postgres store; leases keep each execution on one worker at a time.

    The worker is invoked via:
        python -m jitaccess.grants.worker
"""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

from jitaccess.config import AppConfig, ensure_secure_config_on_startup, load_app_config
from jitaccess.providers import WEBHOOK_PROVIDER_ID, build_registry
from jitaccess.providers.registry import ProviderRegistry
from jitaccess.roles.registry import RoleRegistry
from jitaccess.roles.resolver import RoleResolver

from .orchestrator import GrantOrchestrator
from .store import ExecutionStore, InMemoryExecutionStore

LOG = logging.getLogger(__name__)


def build_store(config: AppConfig) -> ExecutionStore:
    if config.store_backend == "db":
        from .store_db import DBExecutionStore

        store = DBExecutionStore(config.database_url)
        store.ensure_schema()
        return store
    return InMemoryExecutionStore()


def build_roles(config: AppConfig) -> RoleRegistry:
    """Role registry for this process; persisted next to executions with `JIT_STORE=db`."""
    if config.store_backend == "db":
        from jitaccess.roles.store_db import DBRoleSnapshotStore

        snapshots = DBRoleSnapshotStore(config.database_url)
        snapshots.ensure_schema()
        return RoleRegistry(store=snapshots, refresh_seconds=config.role_refresh_seconds)
    return RoleRegistry()


def build_orchestrator(
    config: AppConfig,
    *,
    roles: Optional[RoleRegistry] = None,
    providers: Optional[ProviderRegistry] = None,
    store: Optional[ExecutionStore] = None,
) -> GrantOrchestrator:
    """Wire an orchestrator from configuration; explicit arguments win."""
    return GrantOrchestrator(
        resolver=RoleResolver(roles or build_roles(config)),
        providers=providers or build_registry(config),
        store=store or build_store(config),
        config=config.orchestrator,
        notifier_id=WEBHOOK_PROVIDER_ID if config.webhook_url else None,
    )


def run_forever(orchestrator: GrantOrchestrator, *, poll_interval: float = 0.5) -> None:
    """Continuously process executions until interrupted."""
    while True:
        processed = orchestrator.run_once()
        if not processed:
            time.sleep(poll_interval)


def main() -> None:
    """CLI entrypoint for the worker."""
    level_name = os.getenv("LOG_LEVEL", "INFO")
    normalized_level = level_name.strip().upper() or "INFO"
    logging.basicConfig(level=normalized_level)
    ensure_secure_config_on_startup()
    config = load_app_config()
    orchestrator = build_orchestrator(config)
    LOG.info(
        "grants.worker.started worker=%s store=%s poll_interval=%s",
        orchestrator.worker_id,
        config.store_backend,
        config.poll_interval_seconds,
    )
    try:
        run_forever(orchestrator, poll_interval=config.poll_interval_seconds)
    except KeyboardInterrupt:
        LOG.info("grants.worker.stopped worker=%s", orchestrator.worker_id)


if __name__ == "__main__":  # pragma: no cover
    main()
