"""
Execution stores: the single source of truth for the grant lifecycle.

Contract (ExecutionStore):
    - `create` inserts a new execution (version 1).
    - `save(execution, expected_version=...)` is a compare-and-set: it fails
      with ConcurrentUpdateError unless the stored version still equals
      `expected_version`; on success the version is incremented.
    - `lease_next` hands out the next due execution to exactly one worker
      until `leased_until`.

`InMemoryExecutionStore` is for development and tests; callers only ever get
deep copies, so mutating a returned record never changes stored state.
"""

from __future__ import annotations

import copy
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Iterable, List, Optional, Protocol

from .domain import ConcurrentUpdateError, Execution, Grant, GrantState, TERMINAL_STATES


class ExecutionStore(Protocol):
    def create(self, execution: Execution) -> Execution:
        ...

    def get(self, execution_id: str) -> Optional[Execution]:
        ...

    def save(self, execution: Execution, *, expected_version: int) -> Execution:
        ...

    def lease_next(self, *, now: datetime, lease_seconds: int, owner: str) -> Optional[Execution]:
        ...

    def list_executions(self, states: Optional[Iterable[GrantState]] = None) -> List[Execution]:
        ...

    def list_grants(self, *, archived: bool) -> List[Grant]:
        ...

    def counts(self) -> Dict[str, int]:
        ...


def is_due(execution: Execution, now: datetime) -> bool:
    """Leasable: non-terminal, not parked, due, and not leased by someone else."""
    if execution.state in TERMINAL_STATES or execution.parked:
        return False
    if execution.next_attempt_at is None or execution.next_attempt_at > now:
        return False
    return execution.leased_until is None or execution.leased_until <= now


class InMemoryExecutionStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._data: Dict[str, Execution] = {}

    def create(self, execution: Execution) -> Execution:
        with self._lock:
            if execution.id in self._data:
                raise ConcurrentUpdateError(f"execution already exists: {execution.id}")
            stored = copy.deepcopy(execution)
            stored.version = 1
            self._data[stored.id] = stored
            return copy.deepcopy(stored)

    def get(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            rec = self._data.get(execution_id)
            return copy.deepcopy(rec) if rec else None

    def save(self, execution: Execution, *, expected_version: int) -> Execution:
        with self._lock:
            current = self._data.get(execution.id)
            if current is None:
                raise ConcurrentUpdateError(f"execution vanished: {execution.id}")
            if current.version != expected_version:
                raise ConcurrentUpdateError(
                    f"execution {execution.id} changed (expected version {expected_version}, found {current.version})"
                )
            stored = copy.deepcopy(execution)
            stored.version = expected_version + 1
            self._data[stored.id] = stored
            return copy.deepcopy(stored)

    def lease_next(self, *, now: datetime, lease_seconds: int, owner: str) -> Optional[Execution]:
        with self._lock:
            due = [rec for rec in self._data.values() if is_due(rec, now)]
            if not due:
                return None
            rec = min(due, key=lambda r: (r.next_attempt_at, r.created_at))
            rec.lease_owner = owner
            rec.leased_until = now + timedelta(seconds=lease_seconds)
            rec.version += 1
            return copy.deepcopy(rec)

    def list_executions(self, states: Optional[Iterable[GrantState]] = None) -> List[Execution]:
        wanted = set(states) if states is not None else None
        with self._lock:
            recs = [r for r in self._data.values() if wanted is None or r.state in wanted]
            return [copy.deepcopy(r) for r in sorted(recs, key=lambda r: (r.created_at, r.id))]

    def list_grants(self, *, archived: bool) -> List[Grant]:
        with self._lock:
            grants = [r.grant for r in self._data.values() if r.grant is not None and r.grant.archived == archived]
            return [copy.deepcopy(g) for g in sorted(grants, key=lambda g: (g.issued_at, g.execution_id))]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            out: Dict[str, int] = {}
            for rec in self._data.values():
                out[rec.state.value] = out.get(rec.state.value, 0) + 1
            return out


__all__ = ["ExecutionStore", "InMemoryExecutionStore", "is_due"]
