"""
Service wiring for the HTTP layer.

Intent:
    The core packages take their collaborators explicitly. The web app needs
    one set of them per process; this module builds that set from
    configuration on first use and lets tests swap it via `set_services`.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from jitaccess.catalog.sync import CatalogSynchronizer
from jitaccess.config import AppConfig, load_app_config
from jitaccess.grants.health import GrantsHealthService
from jitaccess.grants.orchestrator import GrantOrchestrator
from jitaccess.grants.worker import build_orchestrator, build_roles, build_store
from jitaccess.providers import build_registry
from jitaccess.providers.registry import ProviderRegistry
from jitaccess.roles.registry import RoleRegistry
from jitaccess.roles.resolver import RoleResolver

LOG = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    roles: RoleRegistry
    resolver: RoleResolver
    providers: ProviderRegistry
    synchronizer: CatalogSynchronizer
    orchestrator: GrantOrchestrator
    health: GrantsHealthService


def build_services(
    config: AppConfig,
    *,
    roles: Optional[RoleRegistry] = None,
    providers: Optional[ProviderRegistry] = None,
) -> Services:
    roles = roles or build_roles(config)
    providers = providers or build_registry(config)
    store = build_store(config)
    orchestrator = build_orchestrator(config, roles=roles, providers=providers, store=store)
    LOG.info("web.services.built store=%s providers=%s", config.store_backend, ",".join(providers.ids()))
    return Services(
        config=config,
        roles=roles,
        resolver=RoleResolver(roles),
        providers=providers,
        synchronizer=CatalogSynchronizer(roles, session_ttl_seconds=config.catalog_session_ttl_seconds),
        orchestrator=orchestrator,
        health=GrantsHealthService(store),
    )


_SERVICES: Optional[Services] = None


def get_services() -> Services:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services(load_app_config())
    return _SERVICES


def set_services(services: Optional[Services]) -> None:
    """Replace the process-wide services (tests); `None` rebuilds lazily."""
    global _SERVICES
    _SERVICES = services


__all__ = ["Services", "build_services", "get_services", "set_services"]
