"""
Postgres-backed RoleSnapshotStore.

Why: Role definitions and installed catalogs must survive restarts and be the
same for every web process. Each published snapshot is one row keyed by its
version; the primary key turns concurrent publishes of the same version into
a lost race the registry can detect.

Note: This module uses psycopg3 and is only used with `JIT_STORE=db`.
Tests use a fake psycopg driver.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Optional

try:
    import psycopg
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    Json = None  # type: ignore
    HAVE_PSYCOPG = False

from .definitions import parse_role, role_to_dict
from .domain import Catalog, CatalogPermission, CatalogRole, RoleSnapshot

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")

SCHEMA_SQL = """
create table if not exists {table} (
    version bigint primary key,
    created_at timestamptz not null default now(),
    roles jsonb not null,
    catalogs jsonb not null
);
"""


def _catalog_to_dict(catalog: Catalog) -> dict:
    return {
        "version": catalog.version,
        "roles": [
            {"name": r.name, "permissions": list(r.permissions), "description": r.description}
            for r in catalog.roles.values()
        ],
        "permissions": [{"name": p.name, "description": p.description} for p in catalog.permissions.values()],
    }


def _catalog_from_dict(provider_id: str, data: Dict[str, Any]) -> Catalog:
    roles = [
        CatalogRole(name=r["name"], permissions=tuple(r.get("permissions") or ()), description=r.get("description") or "")
        for r in data.get("roles") or []
    ]
    permissions = [
        CatalogPermission(name=p["name"], description=p.get("description") or "") for p in data.get("permissions") or []
    ]
    return Catalog(
        provider_id=provider_id,
        version=str(data["version"]),
        roles={r.name: r for r in roles},
        permissions={p.name: p for p in permissions},
    )


def snapshot_to_row(snapshot: RoleSnapshot) -> tuple:
    roles = [role_to_dict(snapshot.roles[role_id]) for role_id in sorted(snapshot.roles)]
    catalogs = {pid: _catalog_to_dict(snapshot.catalogs[pid]) for pid in sorted(snapshot.catalogs)}
    return snapshot.version, roles, catalogs


def snapshot_from_row(version: int, roles: list, catalogs: Dict[str, Any]) -> RoleSnapshot:
    return RoleSnapshot(
        version=int(version),
        roles={raw["id"]: parse_role(raw["id"], raw) for raw in roles},
        catalogs={pid: _catalog_from_dict(pid, data) for pid, data in (catalogs or {}).items()},
    )


class DBRoleSnapshotStore:
    """Append-only table of role snapshots (`public.jit_role_snapshots` by default)."""

    def __init__(self, dsn: str, table: str = "public.jit_role_snapshots") -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBRoleSnapshotStore")
        if not dsn:
            raise RuntimeError("No database DSN provided for DBRoleSnapshotStore")
        if not _TABLE_RE.match(table or ""):
            raise ValueError("Invalid table name")
        self._dsn = dsn
        self._table = table

    def ensure_schema(self) -> None:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL.format(table=self._table))

    def latest_version(self) -> int:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"select coalesce(max(version), 0) from {self._table}", ())
                row = cur.fetchone()
        return int(row[0]) if row else 0

    def load_latest(self) -> Optional[RoleSnapshot]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select version, roles, catalogs from {self._table} order by version desc limit 1", ()
                )
                row = cur.fetchone()
        return snapshot_from_row(*row) if row else None

    def append(self, snapshot: RoleSnapshot) -> bool:
        version, roles, catalogs = snapshot_to_row(snapshot)
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"insert into {self._table} (version, roles, catalogs) values (%s, %s, %s) "
                    "on conflict (version) do nothing returning version",
                    (version, Json(roles), Json(catalogs)),
                )
                row = cur.fetchone()
        return bool(row)


__all__ = ["DBRoleSnapshotStore", "HAVE_PSYCOPG", "SCHEMA_SQL"]
