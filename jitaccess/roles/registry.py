"""
Role Registry: the versioned role graph consumed by the resolver.

Why:
    The registry is the only globally shared mutable state touched by
    resolution. Readers grab the current `RoleSnapshot` reference once and work
    on that immutable value; writers (administrative edits, catalog commits)
    are serialised by a lock, build a complete new snapshot and publish it with
    a single reference assignment. Readers therefore never observe a
    half-updated graph.

Persistence:
    With a `RoleSnapshotStore` attached, every new snapshot is appended to the
    store before it becomes visible, and the registry starts from the store's
    latest version. Versions are unique in the store, so two processes editing
    at once cannot both publish the same version: the loser reloads the latest
    snapshot and reapplies its edit. Edits made by other processes become
    visible at most `refresh_seconds` later.
"""

from __future__ import annotations

import logging
from threading import Lock
import time
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol, Tuple

from jitaccess.errors import ConfigurationError, SnapshotConflictError

from .definitions import validate_role_limits
from .domain import Catalog, Role, RoleSnapshot

LOG = logging.getLogger(__name__)

_PUBLISH_RETRIES = 5

Change = Callable[[RoleSnapshot], Optional[Tuple[Mapping[str, Role], Mapping[str, Catalog]]]]


class RoleSnapshotStore(Protocol):
    def latest_version(self) -> int:
        ...

    def load_latest(self) -> Optional[RoleSnapshot]:
        ...

    def append(self, snapshot: RoleSnapshot) -> bool:
        """Store `snapshot`; False when its version is already taken."""
        ...


class RoleRegistry:
    def __init__(
        self,
        roles: Iterable[Role] = (),
        *,
        store: Optional[RoleSnapshotStore] = None,
        refresh_seconds: float = 5.0,
    ) -> None:
        self._write_lock = Lock()
        self._store = store
        self._refresh_seconds = refresh_seconds
        self._checked_at = time.monotonic()
        self._snapshot = RoleSnapshot(version=1, roles=self._index(roles), catalogs={})
        if store is None:
            return
        latest = store.load_latest()
        if latest is not None:
            self._snapshot = latest
            LOG.info("roles.snapshot.loaded version=%s roles=%s", latest.version, len(latest.roles))
        elif not store.append(self._snapshot):
            # Another process seeded the store first.
            self._reload()

    @staticmethod
    def _index(roles: Iterable[Role]) -> Dict[str, Role]:
        indexed: Dict[str, Role] = {}
        for role in roles:
            validate_role_limits(role)
            if role.id in indexed:
                raise ConfigurationError(f"duplicate role id: {role.id}")
            indexed[role.id] = role
        return indexed

    def snapshot(self) -> RoleSnapshot:
        """Return the current immutable snapshot (no locking on the in-memory path)."""
        if self._store is not None and time.monotonic() - self._checked_at >= self._refresh_seconds:
            self.refresh()
        return self._snapshot

    def refresh(self) -> RoleSnapshot:
        """Adopt a newer snapshot published by another process, if any."""
        if self._store is None:
            return self._snapshot
        with self._write_lock:
            if self._store.latest_version() > self._snapshot.version:
                self._reload()
            self._checked_at = time.monotonic()
            return self._snapshot

    def _reload(self) -> None:
        latest = self._store.load_latest() if self._store is not None else None
        if latest is not None and latest.version > self._snapshot.version:
            LOG.info("roles.snapshot.reloaded from=%s to=%s", self._snapshot.version, latest.version)
            self._snapshot = latest

    @property
    def version(self) -> int:
        return self.snapshot().version

    def get_role(self, role_id: str) -> Optional[Role]:
        return self.snapshot().roles.get(role_id)

    def catalog(self, provider_id: str) -> Optional[Catalog]:
        return self.snapshot().catalogs.get(provider_id)

    def _update(self, change: Change) -> Optional[RoleSnapshot]:
        """Apply `change` to the latest snapshot and publish the result.

        `change` returns the new (roles, catalogs) or None for "nothing to do".
        It may run more than once when another process publishes first.
        """
        with self._write_lock:
            for _ in range(_PUBLISH_RETRIES):
                current = self._snapshot
                changed = change(current)
                if changed is None:
                    return None
                roles, catalogs = changed
                new = RoleSnapshot(version=current.version + 1, roles=roles, catalogs=catalogs)
                if self._store is None or self._store.append(new):
                    self._snapshot = new
                    self._checked_at = time.monotonic()
                    LOG.debug(
                        "roles.snapshot.published version=%s roles=%s catalogs=%s",
                        new.version,
                        len(new.roles),
                        len(new.catalogs),
                    )
                    return new
                LOG.info("roles.snapshot.conflict version=%s", new.version)
                self._reload()
        raise SnapshotConflictError(f"could not publish a role snapshot after {_PUBLISH_RETRIES} attempts")

    def replace_roles(self, roles: Iterable[Role]) -> RoleSnapshot:
        """Swap the complete role set in one step."""
        indexed = self._index(roles)
        return self._update(lambda snap: (indexed, snap.catalogs))

    def put_role(self, role: Role) -> RoleSnapshot:
        validate_role_limits(role)

        def change(snap: RoleSnapshot):
            roles = dict(snap.roles)
            roles[role.id] = role
            return roles, snap.catalogs

        return self._update(change)

    def remove_role(self, role_id: str) -> bool:
        def change(snap: RoleSnapshot):
            if role_id not in snap.roles:
                return None
            roles = dict(snap.roles)
            del roles[role_id]
            return roles, snap.catalogs

        return self._update(change) is not None

    def install_catalog(self, catalog: Catalog) -> RoleSnapshot:
        """Install a provider catalog as the next snapshot (replaces the prior one)."""

        def change(snap: RoleSnapshot):
            catalogs = dict(snap.catalogs)
            catalogs[catalog.provider_id] = catalog
            return snap.roles, catalogs

        snap = self._update(change)
        LOG.info(
            "roles.catalog.installed provider=%s version=%s roles=%s permissions=%s",
            catalog.provider_id,
            catalog.version,
            len(catalog.roles),
            len(catalog.permissions),
        )
        return snap


__all__ = ["RoleRegistry", "RoleSnapshotStore"]
