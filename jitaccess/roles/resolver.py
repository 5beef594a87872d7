"""
Role Resolver: merges a role and its ancestors into an EffectivePolicy.

Algorithm:
    1. Look up the requested role in the current snapshot (disabled or missing
       roles are unknown) and check the identity against its scopes before any
       further work. Out-of-scope requests fail with `scope mismatch`.
    2. Depth-first walk of `inherits` in declaration order. A role reappearing
       on the active path fails with `cyclic inheritance`; the walk is bounded
       by MAX_INHERITANCE_DEPTH. Inherited roles whose scopes exclude the
       identity are skipped together with their ancestors, though the
       cycle and depth checks still cover them.
       Entries naming a provider (`aws:ReadOnly`) or not matching a local role
       are catalog references, resolved against installed provider catalogs.
    3. Layers are merged in post-order (ancestors before the role itself).
       All allow entries are unioned first, then all deny entries; a deny
       removes every allow entry it matches and is kept in the deny set, so
       deny wins regardless of declaration order or depth.

The resolver is a pure function over one snapshot: it never mutates the
registry and its output is fully determined by (snapshot, role, identity).
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from jitaccess.errors import (
    CyclicInheritanceError,
    InheritanceDepthError,
    ScopeMismatchError,
    UnknownRoleError,
)

from .domain import AllowDeny, CatalogRole, EffectivePolicy, Identity, Role, RoleScopes, RoleSnapshot
from .patterns import apply_deny, expand_condensed
from .registry import RoleRegistry

LOG = logging.getLogger(__name__)

MAX_INHERITANCE_DEPTH = 10


def identity_in_scope(scopes: RoleScopes, identity: Optional[Identity]) -> bool:
    """Return True when the identity satisfies at least one scope set.

    Identifier comparison is case-insensitive (e-mail addresses and group
    names arrive from different backends with inconsistent casing).
    """
    if scopes.is_empty():
        return True
    if identity is None:
        return False
    users = {u.lower() for u in scopes.users}
    groups = {g.lower() for g in scopes.groups}
    domains = {d.lower() for d in scopes.domains}
    if identity.kind == "group":
        return any(i.lower() in groups for i in identity.identifiers())
    if any(i.lower() in users for i in identity.identifiers()):
        return True
    if any(g.lower() in groups for g in identity.groups):
        return True
    return bool(identity.domain) and identity.domain.lower() in domains


def split_provider_prefix(entry: str, known_providers: Iterable[str]) -> Tuple[Optional[str], str]:
    """Split `provider:rest` when the prefix names a known provider."""
    idx = entry.find(":")
    if idx <= 0 or idx >= len(entry) - 1:
        return None, entry
    prefix = entry[:idx]
    if prefix in known_providers:
        return prefix, entry[idx + 1 :]
    return None, entry


def _ordered_unique(items: Iterable[str]) -> Tuple[str, ...]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return tuple(seen)


@dataclass
class _Walk:
    layers: List[Role] = field(default_factory=list)
    completed: set = field(default_factory=set)
    checked: set = field(default_factory=set)
    catalog_refs: List[str] = field(default_factory=list)

    def add_ref(self, ref: str) -> None:
        if ref not in self.catalog_refs:
            self.catalog_refs.append(ref)


class RoleResolver:
    def __init__(self, registry: RoleRegistry, *, max_depth: int = MAX_INHERITANCE_DEPTH) -> None:
        self._registry = registry
        self._max_depth = max_depth

    def resolve(self, role_id: str, identity: Optional[Identity]) -> EffectivePolicy:
        """Resolve `role_id` for `identity` against the current snapshot.

        Raises:
            UnknownRoleError, ScopeMismatchError, CyclicInheritanceError,
            InheritanceDepthError (all ResolutionError).
        """
        snap = self._registry.snapshot()
        role = snap.roles.get(role_id)
        if role is None or not role.enabled:
            raise UnknownRoleError(role_id)
        if not identity_in_scope(role.scopes, identity):
            LOG.info("roles.resolve.scope_mismatch role=%s identity=%s", role_id, getattr(identity, "id", None))
            raise ScopeMismatchError(role_id)

        known = snap.known_providers
        walk = _Walk()
        self._visit(snap, role, identity, path=(), walk=walk, known=known)

        providers = self._inherited_list(walk.layers, role, lambda r: r.providers)
        workflows = self._inherited_list(walk.layers, role, lambda r: r.workflows)

        perm_allow: set[str] = set()
        perm_deny: set[str] = set()
        res_allow: set[str] = set()
        res_deny: set[str] = set()
        for layer in walk.layers:
            perm_allow.update(self._expand(self._filter(layer.permissions.allow, providers, known)))
            perm_deny.update(self._expand(self._filter(layer.permissions.deny, providers, known)))
            res_allow.update(self._filter(layer.resources.allow, providers, known))
            res_deny.update(self._filter(layer.resources.deny, providers, known))

        provider_roles: List[str] = []
        for ref in walk.catalog_refs:
            found = self._lookup_catalog_role(snap, ref, providers, known)
            if found is None:
                continue
            provider_id, catalog_role = found
            provider_roles.append(f"{provider_id}:{catalog_role.name}")
            perm_allow.update(self._expand(catalog_role.permissions))

        policy = EffectivePolicy(
            role_id=role.id,
            permissions=AllowDeny(apply_deny(perm_allow, perm_deny), frozenset(perm_deny)),
            resources=AllowDeny(apply_deny(res_allow, res_deny), frozenset(res_deny)),
            workflows=workflows,
            providers=providers,
            provider_roles=tuple(provider_roles),
            snapshot_version=snap.version,
        )
        LOG.debug(
            "roles.resolve.ok role=%s layers=%s allow=%s deny=%s snapshot=%s",
            role.id,
            len(walk.layers),
            len(policy.permissions.allow),
            len(policy.permissions.deny),
            snap.version,
        )
        return policy

    def _visit(
        self,
        snap: RoleSnapshot,
        role: Role,
        identity: Optional[Identity],
        *,
        path: Tuple[str, ...],
        walk: _Walk,
        known: frozenset[str],
        merge: bool = True,
    ) -> None:
        """Walk `role` and its ancestors; with `merge=False` only check structure."""
        if role.id in path:
            raise CyclicInheritanceError(path + (role.id,))
        if role.id in (walk.completed if merge else walk.checked):
            return
        if len(path) >= self._max_depth:
            raise InheritanceDepthError(role.id, self._max_depth)
        active = path + (role.id,)
        for ref in role.inherits:
            provider_id, _ = split_provider_prefix(ref, known)
            parent = None if provider_id is not None else snap.roles.get(ref)
            if parent is None or not parent.enabled:
                if merge:
                    walk.add_ref(ref)
                continue
            in_scope = merge and identity_in_scope(parent.scopes, identity)
            if merge and not in_scope:
                LOG.debug("roles.resolve.skip_inherited role=%s inherited=%s reason=scope", role.id, ref)
            # Skipped parents are still walked so cycles behind them fail the resolution.
            self._visit(snap, parent, identity, path=active, walk=walk, known=known, merge=in_scope)
        walk.checked.add(role.id)
        if merge:
            walk.completed.add(role.id)
            walk.layers.append(role)

    @staticmethod
    def _inherited_list(layers: Sequence[Role], role: Role, getter) -> Tuple[str, ...]:
        """The role's own list overrides; otherwise ancestors' lists in visit order."""
        own = getter(role)
        if own:
            return tuple(own)
        return _ordered_unique(item for layer in layers for item in getter(layer))

    @staticmethod
    def _expand(items: Iterable[str]) -> List[str]:
        return [p for item in items for p in expand_condensed(item)]

    @staticmethod
    def _filter(items: Iterable[str], providers: Sequence[str], known: frozenset[str]) -> List[str]:
        """Keep unprefixed entries and entries prefixed by an allowed provider (prefix stripped)."""
        if not providers:
            return list(items)
        kept: List[str] = []
        for item in items:
            provider_id, rest = split_provider_prefix(item, known)
            if provider_id is None:
                kept.append(item)
            elif provider_id in providers:
                kept.append(rest)
        return kept

    @staticmethod
    def _lookup_catalog_role(
        snap: RoleSnapshot,
        ref: str,
        providers: Sequence[str],
        known: frozenset[str],
    ) -> Optional[Tuple[str, CatalogRole]]:
        provider_id, name = split_provider_prefix(ref, known)
        if provider_id is not None:
            if provider_id not in providers:
                LOG.debug("roles.resolve.skip_provider_role ref=%s reason=provider_not_allowed", ref)
                return None
            catalog = snap.catalogs.get(provider_id)
            found = catalog.roles.get(name) if catalog else None
            if found is None:
                raise UnknownRoleError(ref)
            return provider_id, found
        for candidate in providers:
            catalog = snap.catalogs.get(candidate)
            if catalog and name in catalog.roles:
                return candidate, catalog.roles[name]
        raise UnknownRoleError(ref)


__all__ = ["MAX_INHERITANCE_DEPTH", "RoleResolver", "identity_in_scope", "split_provider_prefix"]
