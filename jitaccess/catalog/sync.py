"""
Catalog Synchronizer: chunked, all-or-nothing catalog refresh sessions.

Protocol:
    start(provider, dataset_version) -> session_id
    push_chunk(session_id, sequence, payload) -> True
    commit(session_id, checksum) -> installed version

Behavior:
    - Sequences must be exactly 0, 1, 2, ... . A gap or duplicate aborts the
      session with `out-of-order chunk`.
    - Commit recomputes the checksum over the buffered payloads. On mismatch
      (or an undecodable payload) the session is aborted and the installed
      catalog stays at its last committed version.
    - A successful commit installs the catalog into the RoleRegistry as the
      next atomic snapshot.
    - At most one open session per (provider, dataset). Sessions idle longer
      than `session_ttl_seconds` are aborted the next time anyone touches the
      synchronizer, so a crashed driver cannot block refreshes forever.

Datasets:
    `catalog` replaces roles and permissions, `roles` / `permissions` replace
    only their half and keep the other from the installed catalog.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
import logging
from threading import Lock
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from jitaccess import telemetry
from jitaccess.errors import SynchronizationError
from jitaccess.roles.domain import Catalog
from jitaccess.roles.registry import RoleRegistry

from .codec import catalog_checksum, decode_chunks

LOG = logging.getLogger(__name__)

DATASETS = ("catalog", "roles", "permissions")
_CLOSED_SESSIONS_KEPT = 256


@dataclass
class CatalogSession:
    id: str
    provider_id: str
    dataset: str
    dataset_version: str
    opened_at: datetime
    expires_at: datetime
    chunks: List[bytes] = field(default_factory=list)
    next_sequence: int = 0
    state: str = "open"  # open | committed | aborted
    reason: str = ""


class CatalogSynchronizer:
    def __init__(self, registry: RoleRegistry, *, session_ttl_seconds: int = 900) -> None:
        self._registry = registry
        self._ttl = timedelta(seconds=session_ttl_seconds)
        self._lock = Lock()
        self._open: Dict[Tuple[str, str], CatalogSession] = {}
        self._by_id: Dict[str, CatalogSession] = {}
        self._closed: "OrderedDict[str, CatalogSession]" = OrderedDict()

    @staticmethod
    def _now(now: Optional[datetime]) -> datetime:
        return now or datetime.now(tz=timezone.utc)

    def start(
        self,
        provider_id: str,
        dataset_version: str,
        dataset: str = "catalog",
        *,
        now: Optional[datetime] = None,
    ) -> str:
        provider_id = (provider_id or "").strip()
        dataset_version = (dataset_version or "").strip()
        if not provider_id or not dataset_version:
            raise SynchronizationError("provider and dataset version are required")
        if dataset not in DATASETS:
            raise SynchronizationError(f"unknown dataset: {dataset}")
        tick = self._now(now)
        with self._lock:
            self._expire_stale(tick)
            key = (provider_id, dataset)
            if key in self._open:
                raise SynchronizationError(f"session already open for provider {provider_id} dataset {dataset}")
            session = CatalogSession(
                id=f"sess-{uuid4().hex}",
                provider_id=provider_id,
                dataset=dataset,
                dataset_version=dataset_version,
                opened_at=tick,
                expires_at=tick + self._ttl,
            )
            self._open[key] = session
            self._by_id[session.id] = session
        LOG.info(
            "catalog.session.started session=%s provider=%s dataset=%s version=%s",
            session.id,
            provider_id,
            dataset,
            dataset_version,
        )
        return session.id

    def push_chunk(self, session_id: str, sequence: int, payload: bytes, *, now: Optional[datetime] = None) -> bool:
        tick = self._now(now)
        with self._lock:
            self._expire_stale(tick)
            session = self._require_open(session_id)
            if sequence != session.next_sequence:
                self._close(session, "aborted", "out-of-order chunk")
                raise SynchronizationError(
                    f"out-of-order chunk: expected sequence {session.next_sequence}, got {sequence}"
                )
            session.chunks.append(bytes(payload))
            session.next_sequence += 1
            session.expires_at = tick + self._ttl
        return True

    def commit(self, session_id: str, checksum: str, *, now: Optional[datetime] = None) -> str:
        """Verify and install the buffered catalog; return the installed version."""
        tick = self._now(now)
        with self._lock:
            self._expire_stale(tick)
            session = self._require_open(session_id)
            actual = catalog_checksum(session.chunks)
            if actual != (checksum or "").strip().lower():
                self._close(session, "aborted", "checksum mismatch")
                telemetry.increment_counter("catalog_commit_total", provider=session.provider_id, outcome="checksum_mismatch")
                raise SynchronizationError("checksum mismatch")
            try:
                roles, permissions = decode_chunks(session.chunks)
            except ValueError as exc:
                self._close(session, "aborted", "invalid payload")
                telemetry.increment_counter("catalog_commit_total", provider=session.provider_id, outcome="invalid_payload")
                raise SynchronizationError(f"invalid payload: {exc}") from exc

            installed = self._registry.catalog(session.provider_id)
            if session.dataset == "roles" and installed is not None:
                permissions = dict(installed.permissions)
            elif session.dataset == "permissions" and installed is not None:
                roles = dict(installed.roles)
            self._registry.install_catalog(
                Catalog(
                    provider_id=session.provider_id,
                    version=session.dataset_version,
                    roles=roles,
                    permissions=permissions,
                )
            )
            chunk_count = len(session.chunks)
            self._close(session, "committed", "")
        telemetry.increment_counter("catalog_commit_total", provider=session.provider_id, outcome="committed")
        LOG.info(
            "catalog.session.committed session=%s provider=%s version=%s chunks=%s",
            session.id,
            session.provider_id,
            session.dataset_version,
            chunk_count,
        )
        return session.dataset_version

    def abort(self, session_id: str, reason: str = "aborted by driver") -> None:
        with self._lock:
            session = self._require_open(session_id)
            self._close(session, "aborted", reason)

    def get_session(self, session_id: str) -> Optional[CatalogSession]:
        """Return a copy of the session (open or recently closed)."""
        with self._lock:
            session = self._by_id.get(session_id) or self._closed.get(session_id)
            return replace(session, chunks=list(session.chunks)) if session else None

    def installed_version(self, provider_id: str) -> Optional[str]:
        return self._registry.snapshot().catalog_version(provider_id)

    def open_sessions(self) -> int:
        with self._lock:
            return len(self._open)

    # ------------------------------ internals -------------------------------

    def _require_open(self, session_id: str) -> CatalogSession:
        session = self._by_id.get(session_id)
        if session is not None:
            return session
        closed = self._closed.get(session_id)
        if closed is not None:
            raise SynchronizationError(f"session {session_id} is {closed.state}: {closed.reason or 'closed'}")
        raise SynchronizationError(f"unknown session: {session_id}")

    def _close(self, session: CatalogSession, state: str, reason: str) -> None:
        session.state = state
        session.reason = reason
        self._open.pop((session.provider_id, session.dataset), None)
        self._by_id.pop(session.id, None)
        session.chunks = []
        self._closed[session.id] = session
        while len(self._closed) > _CLOSED_SESSIONS_KEPT:
            self._closed.popitem(last=False)
        if state == "aborted":
            LOG.warning(
                "catalog.session.aborted session=%s provider=%s reason=%s",
                session.id,
                session.provider_id,
                reason,
            )

    def _expire_stale(self, now: datetime) -> None:
        for session in [s for s in self._open.values() if s.expires_at <= now]:
            self._close(session, "aborted", "session expired")


__all__ = ["DATASETS", "CatalogSession", "CatalogSynchronizer"]
