"""
Lightweight psycopg stand-in for unit tests.

Provides ``install_fake_psycopg`` which monkeypatches a target module so that
``psycopg.connect`` returns an in-memory executions table. Designed to support
the subset of SQL used by DBExecutionStore (create/insert/select/update, the
leasing CTE, grant listing and state counts) and DBRoleSnapshotStore
(append, latest version, latest snapshot).
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import types
from typing import Any, Dict, List, Optional


class FakeJson:
    """Minimal replacement for psycopg.types.json.Json used in tests."""

    def __init__(self, obj: Any) -> None:
        self.obj = obj


def _jsonb(value: Any) -> Any:
    obj = getattr(value, "obj", value)
    return json.loads(json.dumps(obj))


@dataclass
class _Row:
    id: str
    state: str
    next_attempt_at: Any
    parked: bool
    lease_owner: Optional[str]
    leased_until: Any
    version: int
    created_at: Any
    doc: dict

    def columns(self) -> tuple:
        return (_jsonb(self.doc), self.version, self.lease_owner, self.leased_until)


@dataclass
class FakeTable:
    rows: Dict[str, _Row] = field(default_factory=dict)
    statements: List[str] = field(default_factory=list)
    commits: int = 0
    snapshots: Dict[int, tuple] = field(default_factory=dict)


class _FakeCursor:
    def __init__(self, table: FakeTable) -> None:
        self._table = table
        self._row = None
        self._rows: Optional[list] = None

    def execute(self, sql: str, params: tuple | list = ()) -> None:
        sql_low = " ".join((sql or "").lower().split())
        self._table.statements.append(sql_low)
        self._row = None
        self._rows = None
        rows = self._table.rows
        if sql_low.startswith("create table"):
            return
        if "(version, roles, catalogs)" in sql_low:
            version, roles, catalogs = params
            if version in self._table.snapshots:
                return
            self._table.snapshots[version] = (version, _jsonb(roles), _jsonb(catalogs))
            self._row = (version,)
        elif sql_low.startswith("select coalesce(max(version), 0)"):
            self._row = (max(self._table.snapshots, default=0),)
        elif sql_low.startswith("select version, roles, catalogs"):
            snapshots = self._table.snapshots
            self._row = snapshots[max(snapshots)] if snapshots else None
        elif sql_low.startswith("insert into"):
            exec_id, state, next_at, parked, owner, leased_until, created_at, doc = params
            if exec_id in rows:
                return
            rows[exec_id] = _Row(exec_id, state, next_at, parked, owner, leased_until, 1, created_at, _jsonb(doc))
            self._row = (1,)
        elif sql_low.startswith("update") and "where id = %s and version = %s" in sql_low:
            state, next_at, parked, owner, leased_until, doc, exec_id, expected = params
            row = rows.get(exec_id)
            if row is None or row.version != expected:
                return
            row.state, row.next_attempt_at, row.parked = state, next_at, parked
            row.lease_owner, row.leased_until = owner, leased_until
            row.version += 1
            row.doc = _jsonb(doc)
            self._row = row.columns()
        elif sql_low.startswith("with candidate"):
            now, now_again, owner, lease_until = params
            due = [
                r
                for r in rows.values()
                if r.state not in ("revoked", "failed")
                and not r.parked
                and r.next_attempt_at is not None
                and r.next_attempt_at <= now
                and (r.leased_until is None or r.leased_until <= now_again)
            ]
            due.sort(key=lambda r: (r.next_attempt_at, r.created_at))
            if due:
                row = due[0]
                row.lease_owner, row.leased_until = owner, lease_until
                row.version += 1
                self._row = row.columns()
        elif sql_low.startswith("select doc, version") and "where id = %s" in sql_low:
            row = rows.get(params[0])
            self._row = row.columns() if row else None
        elif sql_low.startswith("select doc, version"):
            selected = list(rows.values())
            if "state = any(%s)" in sql_low:
                wanted = set(params[0])
                selected = [r for r in selected if r.state in wanted]
            selected.sort(key=lambda r: (r.created_at, r.id))
            self._rows = [r.columns() for r in selected]
        elif sql_low.startswith("select doc -> 'grant'"):
            (archived,) = params
            grants = [
                r.doc["grant"]
                for r in rows.values()
                if isinstance(r.doc.get("grant"), dict) and bool(r.doc["grant"].get("archived")) == archived
            ]
            grants.sort(key=lambda g: (g.get("issued_at") or "", g.get("execution_id")))
            self._rows = [(_jsonb(g),) for g in grants]
        elif sql_low.startswith("select state, count(*)"):
            counts: Dict[str, int] = {}
            for r in rows.values():
                counts[r.state] = counts.get(r.state, 0) + 1
            self._rows = sorted(counts.items())
        else:
            raise AssertionError(f"Unexpected SQL in fake psycopg: {sql}")

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows or []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _FakeConn:
    def __init__(self, table: FakeTable) -> None:
        self._table = table

    def cursor(self):
        return _FakeCursor(self._table)

    def commit(self) -> None:
        self._table.commits += 1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def install_fake_psycopg(monkeypatch, target_module, table: Optional[FakeTable] = None) -> FakeTable:
    """
    Patch ``target_module`` so psycopg operations go against an in-memory table.

    Returns the mutable table acting as the backing store; pass `table` to
    share one backing store between several patched modules.
    """
    table = table if table is not None else FakeTable()

    def fake_connect(dsn: str, autocommit: bool | None = None):
        return _FakeConn(table)

    fake_psycopg = types.SimpleNamespace(
        connect=fake_connect,
        types=types.SimpleNamespace(json=types.SimpleNamespace(Json=FakeJson)),
    )
    monkeypatch.setattr(target_module, "HAVE_PSYCOPG", True, raising=False)
    monkeypatch.setattr(target_module, "psycopg", fake_psycopg, raising=False)
    monkeypatch.setattr(target_module, "Json", FakeJson, raising=False)
    return table


__all__ = ["FakeJson", "FakeTable", "install_fake_psycopg"]
