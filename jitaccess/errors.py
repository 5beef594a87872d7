"""
Error taxonomy shared by all jitaccess contexts.

Intent:
    Keep the classes callers branch on in one framework-agnostic module so the
    web adapter, the worker and the core services agree on what is retried,
    what is surfaced to the requester and what is fatal at startup.

Design:
    - ConfigurationError: missing/invalid provider or role configuration. Fatal
      at initialization, never retried.
    - ResolutionError: unknown role, cyclic inheritance, scope mismatch.
      Raised before any provider is contacted.
    - CapabilityError: provider does not implement the requested capability.
    - ProviderCallError: transient (retry with backoff) vs. permanent (fail).
    - SynchronizationError: catalog session protocol violations.
    - SnapshotConflictError: a role edit lost the race for the next snapshot
      version too many times.
"""

from __future__ import annotations


class JitAccessError(Exception):
    """Base class for all domain errors raised by jitaccess."""


class ConfigurationError(JitAccessError):
    """Invalid provider/role configuration; fatal, never retried."""


class SnapshotConflictError(JitAccessError):
    """Another process kept publishing role snapshots; the edit was not applied."""


# ------------------------------ Resolution ----------------------------------


class ResolutionError(JitAccessError):
    """Role could not be resolved into an effective policy."""


class UnknownRoleError(ResolutionError):
    def __init__(self, role_id: str) -> None:
        super().__init__(f"unknown role: {role_id}")
        self.role_id = role_id


class CyclicInheritanceError(ResolutionError):
    def __init__(self, path: tuple[str, ...]) -> None:
        super().__init__(f"cyclic inheritance: {' -> '.join(path)}")
        self.path = path


class InheritanceDepthError(ResolutionError):
    def __init__(self, role_id: str, limit: int) -> None:
        super().__init__(f"inheritance depth exceeded for role {role_id} (limit {limit})")
        self.role_id = role_id


class ScopeMismatchError(ResolutionError):
    def __init__(self, role_id: str) -> None:
        super().__init__(f"scope mismatch: identity is not in scope of role {role_id}")
        self.role_id = role_id


# ------------------------------ Providers -----------------------------------


class CapabilityError(JitAccessError):
    """Provider is unknown or does not implement the requested capability."""


class ProviderCallError(JitAccessError):
    """Base class for failures reported by a provider call."""


class ProviderTransientError(ProviderCallError):
    """Recoverable provider error (network, timeout, throttling); retry with backoff."""


class ProviderPermanentError(ProviderCallError):
    """Explicit rejection by the backend (validation, permission denied); do not retry."""


# ------------------------------ Catalog -------------------------------------


class SynchronizationError(JitAccessError):
    """Catalog session aborted or rejected; the installed catalog is unchanged."""


__all__ = [
    "JitAccessError",
    "ConfigurationError",
    "SnapshotConflictError",
    "ResolutionError",
    "UnknownRoleError",
    "CyclicInheritanceError",
    "InheritanceDepthError",
    "ScopeMismatchError",
    "CapabilityError",
    "ProviderCallError",
    "ProviderTransientError",
    "ProviderPermanentError",
    "SynchronizationError",
]
