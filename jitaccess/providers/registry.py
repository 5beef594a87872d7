"""
Provider Registry & Capability Dispatcher.

Intent:
    A typed lookup table from provider id to a backend integration plus the
    capability set it declared at registration. The orchestrator asks for a
    capability ("the authorizer of provider aws") and never learns which
    concrete class answers.

Behavior:
    - Capabilities are checked once, at `register`, against the explicit
      `REQUIRED_METHODS` table. A provider missing a method of a declared
      capability is rejected with ConfigurationError.
    - `dispatch` never retries; an unknown id or an undeclared capability is a
      configuration problem surfaced as CapabilityError.
    - No business logic lives here.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Lock
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from jitaccess.errors import CapabilityError, ConfigurationError

from .ports import (
    AuthorizerProtocol,
    Capability,
    IdentitiesProtocol,
    NotifierProtocol,
    RoleBasedAccessControlProtocol,
)

LOG = logging.getLogger(__name__)

REQUIRED_METHODS: Dict[Capability, Tuple[str, ...]] = {
    Capability.AUTHORIZER: ("authorize_role", "revoke_role"),
    Capability.NOTIFIER: ("send_notification",),
    Capability.RBAC: ("get_role", "list_roles", "get_permission", "list_permissions"),
    Capability.IDENTITIES: ("get_identity", "list_identities", "refresh_identities"),
}


@dataclass(frozen=True)
class RegisteredProvider:
    id: str
    provider: Any
    capabilities: frozenset


def _parse_capabilities(provider_id: str, declared: Iterable[Any]) -> frozenset:
    parsed = set()
    for item in declared:
        try:
            parsed.add(Capability(item))
        except ValueError:
            raise ConfigurationError(f"provider {provider_id} declares unknown capability: {item!r}") from None
    return frozenset(parsed)


class ProviderRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._providers: Dict[str, RegisteredProvider] = {}

    def register(
        self,
        provider_id: str,
        provider: Any,
        *,
        capabilities: Optional[Iterable[Any]] = None,
        config: Optional[Mapping[str, Any]] = None,
    ) -> RegisteredProvider:
        """Initialize `provider` and add it under `provider_id`.

        `capabilities` defaults to the provider's own `capabilities` attribute.

        Raises:
            ConfigurationError: empty/duplicate id, no or unknown capabilities,
                a declared capability with missing methods, or a failing
                `initialize(config)`.
        """
        provider_id = (provider_id or "").strip()
        if not provider_id:
            raise ConfigurationError("provider id must not be empty")
        if provider_id in self._providers:
            raise ConfigurationError(f"provider {provider_id} is already registered")
        declared = capabilities if capabilities is not None else getattr(provider, "capabilities", None)
        if not declared:
            raise ConfigurationError(f"provider {provider_id} declares no capabilities")
        caps = _parse_capabilities(provider_id, declared)
        for cap in sorted(caps, key=lambda c: c.value):
            missing = [m for m in REQUIRED_METHODS[cap] if not callable(getattr(provider, m, None))]
            if missing:
                raise ConfigurationError(
                    f"provider {provider_id} declares {cap.value} but is missing: {', '.join(missing)}"
                )

        initialize = getattr(provider, "initialize", None)
        if callable(initialize):
            initialize(dict(config or {}))

        entry = RegisteredProvider(id=provider_id, provider=provider, capabilities=caps)
        with self._lock:
            if provider_id in self._providers:
                raise ConfigurationError(f"provider {provider_id} is already registered")
            self._providers[provider_id] = entry
        LOG.info(
            "providers.registered id=%s capabilities=%s",
            provider_id,
            ",".join(sorted(c.value for c in caps)),
        )
        return entry

    def unregister(self, provider_id: str) -> bool:
        with self._lock:
            return self._providers.pop(provider_id, None) is not None

    def ids(self) -> List[str]:
        return sorted(self._providers)

    def get(self, provider_id: str) -> RegisteredProvider:
        entry = self._providers.get(provider_id)
        if entry is None:
            raise CapabilityError(f"provider {provider_id} is not registered")
        return entry

    def implements(self, provider_id: str, capability: Capability) -> bool:
        entry = self._providers.get(provider_id)
        return entry is not None and Capability(capability) in entry.capabilities

    def with_capability(self, capability: Capability) -> List[str]:
        cap = Capability(capability)
        return sorted(pid for pid, entry in self._providers.items() if cap in entry.capabilities)

    def dispatch(self, provider_id: str, capability: Capability) -> Any:
        """Return the provider for `capability` or raise CapabilityError."""
        entry = self.get(provider_id)
        cap = Capability(capability)
        if cap not in entry.capabilities:
            raise CapabilityError(f"provider {provider_id} does not implement {cap.value}")
        return entry.provider

    def authorizer(self, provider_id: str) -> AuthorizerProtocol:
        return self.dispatch(provider_id, Capability.AUTHORIZER)

    def notifier(self, provider_id: str) -> NotifierProtocol:
        return self.dispatch(provider_id, Capability.NOTIFIER)

    def rbac(self, provider_id: str) -> RoleBasedAccessControlProtocol:
        return self.dispatch(provider_id, Capability.RBAC)

    def identities(self, provider_id: str) -> IdentitiesProtocol:
        return self.dispatch(provider_id, Capability.IDENTITIES)


__all__ = ["REQUIRED_METHODS", "ProviderRegistry", "RegisteredProvider"]
