"""
Deterministic in-memory provider for local development and tests.

Intent:
    Implement every capability without contacting a real backend so the whole
    request lifecycle can run on a laptop or inside pytest.

Behavior:
    - `authorize_role` / `revoke_role` dedupe on the idempotency key: a repeated
      key returns the earlier outcome and is not recorded as a new call.
    - Only successful calls are recorded (`authorize_calls`, `revoke_calls`),
      which is what "exactly one successful revoke" is measured against.
    - `fail_next(operation, *errors)` queues exceptions that the next calls to
      `operation` raise in order.
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import itertools
import logging
from threading import Lock
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional

from jitaccess.errors import ConfigurationError
from jitaccess.roles.domain import CatalogPermission, CatalogRole, EffectivePolicy, Identity

from .ports import Capability, GrantHandle, NotificationRequest

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCall:
    operation: str
    subject_id: str
    role_id: str
    idempotency_key: str
    handle_id: str


class LocalProvider:
    capabilities = (Capability.AUTHORIZER, Capability.NOTIFIER, Capability.RBAC, Capability.IDENTITIES)

    def __init__(
        self,
        *,
        provider_id: str = "local",
        roles: Iterable[CatalogRole] = (),
        permissions: Iterable[CatalogPermission] = (),
        identities: Iterable[Identity] = (),
    ) -> None:
        self.provider_id = provider_id
        self._lock = Lock()
        self._counter = itertools.count(1)
        self._roles: Dict[str, CatalogRole] = {r.name: r for r in roles}
        self._permissions: Dict[str, CatalogPermission] = {p.name: p for p in permissions}
        self._identities: Dict[str, Identity] = {i.id: i for i in identities}
        self._failures: Dict[str, Deque[Exception]] = defaultdict(deque)
        self._authorized: Dict[str, GrantHandle] = {}
        self._revoked: set[str] = set()
        self._active: Dict[str, GrantHandle] = {}
        self.authorize_calls: List[ProviderCall] = []
        self.revoke_calls: List[ProviderCall] = []
        self.notifications: List[NotificationRequest] = []
        self.refresh_count = 0
        self.config: Dict[str, Any] = {}

    def initialize(self, config: Mapping[str, Any]) -> None:
        name = config.get("name", self.provider_id)
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError("local provider requires a non-empty 'name'")
        self.config = dict(config)

    def fail_next(self, operation: str, *errors: Exception) -> None:
        with self._lock:
            self._failures[operation].extend(errors)

    def _raise_scripted(self, operation: str) -> None:
        queue = self._failures.get(operation)
        if queue:
            raise queue.popleft()

    # --------------------------- Authorizer ---------------------------------

    def authorize_role(self, *, subject: Identity, policy: EffectivePolicy, idempotency_key: str) -> GrantHandle:
        with self._lock:
            self._raise_scripted("authorize_role")
            existing = self._authorized.get(idempotency_key)
            if existing is not None:
                LOG.debug("local.authorize.dedupe key=%s handle=%s", idempotency_key, existing.handle_id)
                return existing
            handle = GrantHandle(
                provider_id=self.provider_id,
                handle_id=f"{self.provider_id}-grant-{next(self._counter)}",
                metadata={"permissions": len(policy.permissions.allow)},
            )
            self._authorized[idempotency_key] = handle
            self._active[handle.handle_id] = handle
            self.authorize_calls.append(
                ProviderCall("authorize_role", subject.id, policy.role_id, idempotency_key, handle.handle_id)
            )
            return handle

    def revoke_role(
        self,
        *,
        subject: Identity,
        policy: EffectivePolicy,
        handle: Optional[GrantHandle],
        idempotency_key: str,
    ) -> None:
        with self._lock:
            self._raise_scripted("revoke_role")
            if idempotency_key in self._revoked:
                LOG.debug("local.revoke.dedupe key=%s", idempotency_key)
                return
            handle_id = handle.handle_id if handle else ""
            self._active.pop(handle_id, None)
            self._revoked.add(idempotency_key)
            self.revoke_calls.append(
                ProviderCall("revoke_role", subject.id, policy.role_id, idempotency_key, handle_id)
            )

    def active_grants(self) -> List[GrantHandle]:
        with self._lock:
            return list(self._active.values())

    # ---------------------------- Notifier ----------------------------------

    def send_notification(self, request: NotificationRequest) -> None:
        with self._lock:
            self._raise_scripted("send_notification")
            self.notifications.append(request)

    # ------------------------------ RBAC ------------------------------------

    def get_role(self, name: str) -> Optional[CatalogRole]:
        return self._roles.get(name)

    def list_roles(self) -> List[CatalogRole]:
        return [self._roles[k] for k in sorted(self._roles)]

    def get_permission(self, name: str) -> Optional[CatalogPermission]:
        return self._permissions.get(name)

    def list_permissions(self) -> List[CatalogPermission]:
        return [self._permissions[k] for k in sorted(self._permissions)]

    # --------------------------- Identities ---------------------------------

    def add_identity(self, identity: Identity) -> None:
        with self._lock:
            self._identities[identity.id] = identity

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        return self._identities.get(identity_id)

    def list_identities(self, query: str = "") -> List[Identity]:
        needle = (query or "").strip().lower()
        found = [
            ident
            for ident in self._identities.values()
            if not needle or any(needle in value.lower() for value in ident.identifiers())
        ]
        return sorted(found, key=lambda i: i.id)

    def refresh_identities(self) -> None:
        self.refresh_count += 1


def build(provider_id: str = "local") -> LocalProvider:
    """Factory used by `build_registry` to instantiate the provider."""
    return LocalProvider(provider_id=provider_id)


__all__ = ["LocalProvider", "ProviderCall", "build"]
