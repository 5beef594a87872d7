"""Provider Registry & Capability Dispatcher plus bundled integrations.

Exports:
    `ProviderRegistry` and the capability ports. `build_registry(config)`
    wires the integrations the worker and web entry points use.
"""

from __future__ import annotations

import logging

from jitaccess.config import AppConfig

from . import local, webhook
from .ports import Capability, GrantHandle, NotificationRequest
from .registry import ProviderRegistry

LOG = logging.getLogger(__name__)

WEBHOOK_PROVIDER_ID = "webhook"


def build_registry(config: AppConfig) -> ProviderRegistry:
    """Register the local provider and, when configured, the webhook notifier."""
    registry = ProviderRegistry()
    registry.register(
        config.local_provider_id,
        local.build(config.local_provider_id),
        config={"name": config.local_provider_id},
    )
    if config.webhook_url:
        registry.register(
            WEBHOOK_PROVIDER_ID,
            webhook.build(),
            config={"url": config.webhook_url},
        )
    LOG.info("providers.registry.built providers=%s", ",".join(registry.ids()))
    return registry


__all__ = [
    "Capability",
    "GrantHandle",
    "NotificationRequest",
    "ProviderRegistry",
    "WEBHOOK_PROVIDER_ID",
    "build_registry",
]
