"""
Role, identity and policy records for the Role Registry & Resolver.

Why:
    Resolution is a pure function over immutable values. Every record here is a
    frozen dataclass so a snapshot handed to one resolution can never be
    changed underneath it by an administrative edit or a catalog commit.

Terms:
    - Role: inheritable bundle of allow/deny permission and resource patterns
      plus scope restrictions.
    - EffectivePolicy: the merged, conflict-resolved result for one
      (role, identity) pair.
    - Catalog: roles/permissions known to a backend, installed by the
      catalog synchronizer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from .patterns import matches_any


@dataclass(frozen=True)
class AllowDeny:
    allow: frozenset[str] = frozenset()
    deny: frozenset[str] = frozenset()

    def __len__(self) -> int:
        return len(self.allow) + len(self.deny)


@dataclass(frozen=True)
class RoleScopes:
    """Who may be assigned a role. Empty means unrestricted."""

    users: frozenset[str] = frozenset()
    groups: frozenset[str] = frozenset()
    domains: frozenset[str] = frozenset()

    def is_empty(self) -> bool:
        return not (self.users or self.groups or self.domains)

    def __len__(self) -> int:
        return len(self.users) + len(self.groups) + len(self.domains)


@dataclass(frozen=True)
class Role:
    id: str
    name: str = ""
    description: str = ""
    inherits: Tuple[str, ...] = ()
    permissions: AllowDeny = AllowDeny()
    resources: AllowDeny = AllowDeny()
    scopes: RoleScopes = RoleScopes()
    workflows: Tuple[str, ...] = ()
    providers: Tuple[str, ...] = ()
    enabled: bool = True

    @property
    def display_name(self) -> str:
        return self.name or self.id


# ------------------------------ Identities ----------------------------------


@dataclass(frozen=True)
class User:
    id: str
    email: str = ""
    domain: str = ""
    groups: frozenset[str] = frozenset()
    username: str = ""
    name: str = ""

    kind = "user"

    def __post_init__(self) -> None:
        if not self.domain and "@" in self.email:
            object.__setattr__(self, "domain", self.email.rsplit("@", 1)[1].lower())

    def identifiers(self) -> tuple[str, ...]:
        return tuple(v for v in (self.id, self.email, self.username) if v)


@dataclass(frozen=True)
class Group:
    id: str
    name: str = ""
    members: Tuple[User, ...] = ()

    kind = "group"

    def identifiers(self) -> tuple[str, ...]:
        return tuple(v for v in (self.id, self.name) if v)


Identity = Union[User, Group]


def _user_from_dict(data: Mapping[str, Any]) -> User:
    return User(
        id=str(data["id"]),
        email=str(data.get("email") or ""),
        domain=str(data.get("domain") or ""),
        groups=frozenset(data.get("groups") or ()),
        username=str(data.get("username") or ""),
        name=str(data.get("name") or ""),
    )


def _group_from_dict(data: Mapping[str, Any]) -> Group:
    return Group(
        id=str(data["id"]),
        name=str(data.get("name") or ""),
        members=tuple(_user_from_dict(m) for m in data.get("members") or ()),
    )


_IDENTITY_DECODERS: Dict[str, Callable[[Mapping[str, Any]], Identity]] = {
    "user": _user_from_dict,
    "group": _group_from_dict,
}


def identity_to_dict(identity: Identity) -> dict:
    if identity.kind == "group":
        return {
            "kind": "group",
            "id": identity.id,
            "name": identity.name,
            "members": [identity_to_dict(m) for m in identity.members],
        }
    return {
        "kind": "user",
        "id": identity.id,
        "email": identity.email,
        "domain": identity.domain,
        "groups": sorted(identity.groups),
        "username": identity.username,
        "name": identity.name,
    }


def identity_from_dict(data: Mapping[str, Any]) -> Identity:
    kind = str(data.get("kind") or "user")
    decoder = _IDENTITY_DECODERS.get(kind)
    if decoder is None:
        raise ValueError(f"unknown identity kind: {kind}")
    return decoder(data)


# ------------------------------ Catalogs ------------------------------------


@dataclass(frozen=True)
class CatalogRole:
    name: str
    permissions: Tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class CatalogPermission:
    name: str
    description: str = ""


@dataclass(frozen=True)
class Catalog:
    provider_id: str
    version: str
    roles: Mapping[str, CatalogRole] = field(default_factory=dict)
    permissions: Mapping[str, CatalogPermission] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", MappingProxyType(dict(self.roles)))
        object.__setattr__(self, "permissions", MappingProxyType(dict(self.permissions)))


@dataclass(frozen=True)
class RoleSnapshot:
    """Immutable, versioned view of the role graph and installed catalogs."""

    version: int
    roles: Mapping[str, Role] = field(default_factory=dict)
    catalogs: Mapping[str, Catalog] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", MappingProxyType(dict(self.roles)))
        object.__setattr__(self, "catalogs", MappingProxyType(dict(self.catalogs)))

    @property
    def known_providers(self) -> frozenset[str]:
        names = set(self.catalogs)
        for role in self.roles.values():
            names.update(role.providers)
        return frozenset(names)

    def catalog_version(self, provider_id: str) -> Optional[str]:
        catalog = self.catalogs.get(provider_id)
        return catalog.version if catalog else None


# ------------------------------ Policy --------------------------------------


@dataclass(frozen=True)
class EffectivePolicy:
    """Resolved output for one (role, identity). Immutable; never cached."""

    role_id: str
    permissions: AllowDeny
    resources: AllowDeny
    workflows: Tuple[str, ...]
    providers: Tuple[str, ...]
    provider_roles: Tuple[str, ...] = ()
    snapshot_version: int = 0

    def allows_permission(self, action: str) -> bool:
        """Deny-before-allow evaluation of a concrete action."""
        if matches_any(self.permissions.deny, action):
            return False
        return matches_any(self.permissions.allow, action)

    def allows_resource(self, resource: str) -> bool:
        if matches_any(self.resources.deny, resource):
            return False
        return matches_any(self.resources.allow, resource)

    def to_dict(self) -> dict:
        return {
            "role_id": self.role_id,
            "permissions": {
                "allow": sorted(self.permissions.allow),
                "deny": sorted(self.permissions.deny),
            },
            "resources": {
                "allow": sorted(self.resources.allow),
                "deny": sorted(self.resources.deny),
            },
            "workflows": list(self.workflows),
            "providers": list(self.providers),
            "provider_roles": list(self.provider_roles),
            "snapshot_version": self.snapshot_version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EffectivePolicy":
        perms = data.get("permissions") or {}
        res = data.get("resources") or {}
        return cls(
            role_id=str(data["role_id"]),
            permissions=AllowDeny(frozenset(perms.get("allow") or ()), frozenset(perms.get("deny") or ())),
            resources=AllowDeny(frozenset(res.get("allow") or ()), frozenset(res.get("deny") or ())),
            workflows=tuple(data.get("workflows") or ()),
            providers=tuple(data.get("providers") or ()),
            provider_roles=tuple(data.get("provider_roles") or ()),
            snapshot_version=int(data.get("snapshot_version") or 0),
        )


__all__ = [
    "AllowDeny",
    "Catalog",
    "CatalogPermission",
    "CatalogRole",
    "EffectivePolicy",
    "Group",
    "Identity",
    "Role",
    "RoleScopes",
    "RoleSnapshot",
    "User",
    "identity_from_dict",
    "identity_to_dict",
]
