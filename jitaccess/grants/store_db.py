"""
Database-backed ExecutionStore for production use (Postgres).

Why: In-memory executions do not survive restarts and cannot be shared by
several workers. This store keeps each execution as a JSONB document plus the
columns the worker queue needs (state, next_attempt_at, parked, lease).

Concurrency:
- `save` is a compare-and-set on the `version` column.
- `lease_next` selects with `for update skip locked`, so concurrent workers
  never lease the same execution.

Note: This module uses psycopg3. It is imported only when enabled via
`JIT_STORE=db`. Tests use the in-memory store or a fake psycopg driver.
"""
from __future__ import annotations

from datetime import datetime, timedelta
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

try:
    import psycopg
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    Json = None  # type: ignore
    HAVE_PSYCOPG = False

from .domain import ConcurrentUpdateError, Execution, Grant, GrantState

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")
_ROW_COLUMNS = "doc, version, lease_owner, leased_until"
# Stored in columns only; merged back into the document on read.
_COLUMN_FIELDS = ("version", "lease_owner", "leased_until")

SCHEMA_SQL = """
create table if not exists {table} (
    id text primary key,
    state text not null,
    next_attempt_at timestamptz,
    parked boolean not null default false,
    lease_owner text,
    leased_until timestamptz,
    version integer not null,
    created_at timestamptz not null,
    doc jsonb not null
);
create index if not exists {index} on {table} (state, next_attempt_at);
"""


def _document(execution: Execution) -> dict:
    doc = execution.to_dict()
    for key in _COLUMN_FIELDS:
        doc.pop(key, None)
    return doc


def _row_to_execution(row: Sequence[Any]) -> Execution:
    doc, version, lease_owner, leased_until = row
    data: Dict[str, Any] = dict(doc)
    data["version"] = version
    data["lease_owner"] = lease_owner
    data["leased_until"] = leased_until.isoformat() if isinstance(leased_until, datetime) else leased_until
    return Execution.from_dict(data)


class DBExecutionStore:
    """Postgres-backed execution store.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string.
    table:
        Fully qualified table name. Defaults to `public.jit_executions`.
    """

    def __init__(self, dsn: str, table: str = "public.jit_executions") -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBExecutionStore")
        if not dsn:
            raise RuntimeError("No database DSN provided for DBExecutionStore")
        if not _TABLE_RE.match(table or ""):
            raise ValueError("Invalid table name")
        self._dsn = dsn
        self._table = table

    def ensure_schema(self) -> None:
        index = self._table.split(".")[-1] + "_due_idx"
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL.format(table=self._table, index=index))

    def create(self, execution: Execution) -> Execution:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"insert into {self._table} "
                    "(id, state, next_attempt_at, parked, lease_owner, leased_until, version, created_at, doc) "
                    "values (%s, %s, %s, %s, %s, %s, 1, %s, %s) "
                    "on conflict (id) do nothing returning version",
                    (
                        execution.id,
                        execution.state.value,
                        execution.next_attempt_at,
                        execution.parked,
                        execution.lease_owner,
                        execution.leased_until,
                        execution.created_at,
                        Json(_document(execution)),
                    ),
                )
                row = cur.fetchone()
        if not row:
            raise ConcurrentUpdateError(f"execution already exists: {execution.id}")
        created = Execution.from_dict(execution.to_dict())
        created.version = int(row[0])
        return created

    def get(self, execution_id: str) -> Optional[Execution]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"select {_ROW_COLUMNS} from {self._table} where id = %s", (execution_id,))
                row = cur.fetchone()
        return _row_to_execution(row) if row else None

    def save(self, execution: Execution, *, expected_version: int) -> Execution:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"update {self._table} "
                    "set state = %s, next_attempt_at = %s, parked = %s, lease_owner = %s, leased_until = %s, "
                    "version = version + 1, doc = %s "
                    f"where id = %s and version = %s returning {_ROW_COLUMNS}",
                    (
                        execution.state.value,
                        execution.next_attempt_at,
                        execution.parked,
                        execution.lease_owner,
                        execution.leased_until,
                        Json(_document(execution)),
                        execution.id,
                        expected_version,
                    ),
                )
                row = cur.fetchone()
        if not row:
            raise ConcurrentUpdateError(
                f"execution {execution.id} changed (expected version {expected_version})"
            )
        return _row_to_execution(row)

    def lease_next(self, *, now: datetime, lease_seconds: int, owner: str) -> Optional[Execution]:
        lease_until = now + timedelta(seconds=lease_seconds)
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    with candidate as (
                        select id
                          from {self._table}
                         where state not in ('revoked', 'failed')
                           and parked = false
                           and next_attempt_at is not null
                           and next_attempt_at <= %s
                           and (leased_until is null or leased_until <= %s)
                         order by next_attempt_at asc, created_at asc
                         limit 1
                         for update skip locked
                    )
                    update {self._table} as e
                       set lease_owner = %s,
                           leased_until = %s,
                           version = e.version + 1
                      from candidate
                     where e.id = candidate.id
                    returning e.doc, e.version, e.lease_owner, e.leased_until
                    """,
                    (now, now, owner, lease_until),
                )
                row = cur.fetchone()
            conn.commit()
        return _row_to_execution(row) if row else None

    def list_executions(self, states: Optional[Iterable[GrantState]] = None) -> List[Execution]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                if states is None:
                    cur.execute(f"select {_ROW_COLUMNS} from {self._table} order by created_at, id", ())
                else:
                    cur.execute(
                        f"select {_ROW_COLUMNS} from {self._table} where state = any(%s) order by created_at, id",
                        ([GrantState(s).value for s in states],),
                    )
                rows = cur.fetchall()
        return [_row_to_execution(row) for row in rows]

    def list_grants(self, *, archived: bool) -> List[Grant]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select doc -> 'grant' from {self._table} "
                    "where jsonb_typeof(doc -> 'grant') = 'object' "
                    "and coalesce((doc -> 'grant' ->> 'archived')::boolean, false) = %s "
                    "order by doc -> 'grant' ->> 'issued_at', id",
                    (archived,),
                )
                rows = cur.fetchall()
        return [Grant.from_dict(row[0]) for row in rows]

    def counts(self) -> Dict[str, int]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"select state, count(*) from {self._table} group by state", ())
                rows = cur.fetchall()
        return {str(state): int(count) for state, count in rows}


__all__ = ["DBExecutionStore", "HAVE_PSYCOPG", "SCHEMA_SQL"]
