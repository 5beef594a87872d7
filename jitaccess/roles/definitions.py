"""
Role definitions: parsing plain mappings into `Role` records and enforcing limits.

Intent:
    Administrative edits (HTTP API) and catalog payloads arrive as plain
    mappings. This module is the single place that turns them into validated
    `Role` values so the registry only ever stores well-formed definitions.

Behavior:
    - Disabled roles (`enabled: false`) are skipped.
    - `name` defaults to the mapping key.
    - Size limits bound resolution cost; violations raise ConfigurationError.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping

from jitaccess.errors import ConfigurationError

from .domain import AllowDeny, Role, RoleScopes

LOG = logging.getLogger(__name__)

MAX_PERMISSIONS = 500
MAX_RESOURCES = 100
MAX_SCOPES = 50
MAX_INHERITS = 50
MAX_PROVIDERS = 5
MAX_WORKFLOWS = 5


def validate_role_limits(role: Role) -> None:
    """Raise ConfigurationError for the first limit the role exceeds."""
    checks = (
        ("permissions", len(role.permissions), MAX_PERMISSIONS),
        ("resources", len(role.resources), MAX_RESOURCES),
        ("scopes", len(role.scopes), MAX_SCOPES),
        ("inherits", len(role.inherits), MAX_INHERITS),
        ("providers", len(role.providers), MAX_PROVIDERS),
        ("workflows", len(role.workflows), MAX_WORKFLOWS),
    )
    for label, count, limit in checks:
        if count > limit:
            raise ConfigurationError(f"role '{role.id}' exceeds maximum {label} limit: {count} > {limit}")
    if not role.id or not role.id.strip():
        raise ConfigurationError("role id must not be empty")


def _strings(value: Any, *, field: str, role_id: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise ConfigurationError(f"role '{role_id}': {field} must be a list of strings")
    out: List[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigurationError(f"role '{role_id}': {field} entries must be non-empty strings")
        out.append(item.strip())
    return out


def _flag(value: Any, *, field: str, role_id: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"role '{role_id}': {field} must be true or false")
    return value


def _ordered_unique(items: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return tuple(seen)


def _allow_deny(raw: Any, *, field: str, role_id: str) -> AllowDeny:
    if raw is None:
        return AllowDeny()
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"role '{role_id}': {field} must be a mapping with allow/deny")
    return AllowDeny(
        allow=frozenset(_strings(raw.get("allow"), field=f"{field}.allow", role_id=role_id)),
        deny=frozenset(_strings(raw.get("deny"), field=f"{field}.deny", role_id=role_id)),
    )


def parse_role(role_id: str, raw: Mapping[str, Any]) -> Role:
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"role '{role_id}' must be a mapping")
    scopes_raw = raw.get("scopes") or {}
    if not isinstance(scopes_raw, Mapping):
        raise ConfigurationError(f"role '{role_id}': scopes must be a mapping")
    role = Role(
        id=role_id,
        name=str(raw.get("name") or role_id),
        description=str(raw.get("description") or ""),
        inherits=tuple(_strings(raw.get("inherits"), field="inherits", role_id=role_id)),
        permissions=_allow_deny(raw.get("permissions"), field="permissions", role_id=role_id),
        resources=_allow_deny(raw.get("resources"), field="resources", role_id=role_id),
        scopes=RoleScopes(
            users=frozenset(_strings(scopes_raw.get("users"), field="scopes.users", role_id=role_id)),
            groups=frozenset(_strings(scopes_raw.get("groups"), field="scopes.groups", role_id=role_id)),
            domains=frozenset(_strings(scopes_raw.get("domains"), field="scopes.domains", role_id=role_id)),
        ),
        workflows=_ordered_unique(_strings(raw.get("workflows"), field="workflows", role_id=role_id)),
        providers=_ordered_unique(_strings(raw.get("providers"), field="providers", role_id=role_id)),
        enabled=_flag(raw.get("enabled", True), field="enabled", role_id=role_id),
    )
    validate_role_limits(role)
    return role


def parse_role_definitions(definitions: Mapping[str, Mapping[str, Any]]) -> List[Role]:
    """Parse `{role_id: definition}` into enabled, validated roles (sorted by id)."""
    if not isinstance(definitions, Mapping):
        raise ConfigurationError("role definitions must be a mapping of role id to definition")
    roles: List[Role] = []
    for role_id in sorted(definitions):
        role = parse_role(str(role_id), definitions[role_id])
        if not role.enabled:
            LOG.info("roles.definition.disabled role=%s", role_id)
            continue
        roles.append(role)
    return roles


def role_to_dict(role: Role) -> dict:
    return {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "inherits": list(role.inherits),
        "permissions": {"allow": sorted(role.permissions.allow), "deny": sorted(role.permissions.deny)},
        "resources": {"allow": sorted(role.resources.allow), "deny": sorted(role.resources.deny)},
        "scopes": {
            "users": sorted(role.scopes.users),
            "groups": sorted(role.scopes.groups),
            "domains": sorted(role.scopes.domains),
        },
        "workflows": list(role.workflows),
        "providers": list(role.providers),
        "enabled": role.enabled,
    }


__all__ = [
    "MAX_INHERITS",
    "MAX_PERMISSIONS",
    "MAX_PROVIDERS",
    "MAX_RESOURCES",
    "MAX_SCOPES",
    "MAX_WORKFLOWS",
    "parse_role",
    "parse_role_definitions",
    "role_to_dict",
    "validate_role_limits",
]
