"""
Ports for provider integrations: capabilities, shared result types, protocols.

Intent:
    Provide framework-agnostic contracts between the orchestrator/synchronizer
    and concrete backend integrations (local, webhook, cloud IAM). Keeping
    these definitions in a dedicated module avoids circular imports and makes
    the seam explicit.

Design:
    - Capability: closed set of contracts a provider may implement.
    - Result/request types: GrantHandle, NotificationRequest
    - Protocols: one per capability plus ProviderProtocol.initialize
    - Error taxonomy: transient vs. permanent (re-exported from jitaccess.errors)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, Sequence

from jitaccess.errors import (
    CapabilityError,
    ConfigurationError,
    ProviderCallError,
    ProviderPermanentError,
    ProviderTransientError,
)
from jitaccess.roles.domain import CatalogPermission, CatalogRole, EffectivePolicy, Identity


class Capability(str, Enum):
    AUTHORIZER = "authorizer"
    NOTIFIER = "notifier"
    RBAC = "rbac"
    IDENTITIES = "identities"


# ----------------------------- Result types ---------------------------------


@dataclass(frozen=True)
class GrantHandle:
    """Provider-side reference to an issued grant.

    Parameters:
        provider_id: Registry id of the provider that issued the grant.
        handle_id: Opaque id the provider needs to revoke the grant later.
        metadata: Optional provider diagnostics (never secrets).
    """

    provider_id: str
    handle_id: str
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"provider_id": self.provider_id, "handle_id": self.handle_id, "metadata": dict(self.metadata)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GrantHandle":
        return cls(
            provider_id=str(data["provider_id"]),
            handle_id=str(data["handle_id"]),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class NotificationRequest:
    """Message handed to a Notifier for one workflow step.

    `kind` is `approval_request` for workflow steps; `approval_signal` is the
    signal name an approver answers with.
    """

    execution_id: str
    kind: str
    subject_id: str
    role_id: str
    step: str = ""
    reason: str = ""
    duration_seconds: int = 0
    approval_signal: str = ""
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "kind": self.kind,
            "subject_id": self.subject_id,
            "role_id": self.role_id,
            "step": self.step,
            "reason": self.reason,
            "duration_seconds": self.duration_seconds,
            "approval_signal": self.approval_signal,
            "details": dict(self.details),
        }


# ----------------------------- Protocols ------------------------------------


class ProviderProtocol(Protocol):
    """Lifecycle hook called once at registration; fails closed on bad config."""

    def initialize(self, config: Mapping[str, Any]) -> None:
        ...


class AuthorizerProtocol(Protocol):
    """Issues and revokes grants. Both calls must dedupe on `idempotency_key`."""

    def authorize_role(self, *, subject: Identity, policy: EffectivePolicy, idempotency_key: str) -> GrantHandle:
        ...

    def revoke_role(
        self,
        *,
        subject: Identity,
        policy: EffectivePolicy,
        handle: Optional[GrantHandle],
        idempotency_key: str,
    ) -> None:
        ...


class NotifierProtocol(Protocol):
    def send_notification(self, request: NotificationRequest) -> None:
        ...


class RoleBasedAccessControlProtocol(Protocol):
    """Read-only catalog queries."""

    def get_role(self, name: str) -> Optional[CatalogRole]:
        ...

    def list_roles(self) -> Sequence[CatalogRole]:
        ...

    def get_permission(self, name: str) -> Optional[CatalogPermission]:
        ...

    def list_permissions(self) -> Sequence[CatalogPermission]:
        ...


class IdentitiesProtocol(Protocol):
    def get_identity(self, identity_id: str) -> Optional[Identity]:
        ...

    def list_identities(self, query: str = "") -> Sequence[Identity]:
        ...

    def refresh_identities(self) -> None:
        ...


__all__ = [
    "Capability",
    # Results
    "GrantHandle",
    "NotificationRequest",
    # Protocols
    "AuthorizerProtocol",
    "IdentitiesProtocol",
    "NotifierProtocol",
    "ProviderProtocol",
    "RoleBasedAccessControlProtocol",
    # Errors
    "CapabilityError",
    "ConfigurationError",
    "ProviderCallError",
    "ProviderPermanentError",
    "ProviderTransientError",
]
