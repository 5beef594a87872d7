"""
Chunk payload format for catalog synchronization.

Each chunk is a UTF-8 JSON document:

    {"roles": [{"name": "ReadOnly", "permissions": ["s3:get"], "description": ""}],
     "permissions": [{"name": "s3:get", "description": ""}]}

Either key may be missing. Chunks are merged in sequence order; a later entry
with the same name replaces an earlier one. The session checksum is the
SHA-256 hex digest over the raw payload bytes concatenated in order.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from jitaccess.roles.domain import CatalogPermission, CatalogRole


def catalog_checksum(chunks: Iterable[bytes]) -> str:
    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(chunk)
    return digest.hexdigest()


def _role_from_entry(entry: Any) -> CatalogRole:
    if not isinstance(entry, dict) or not isinstance(entry.get("name"), str) or not entry["name"].strip():
        raise ValueError("catalog role entries need a non-empty 'name'")
    perms = entry.get("permissions") or []
    if not isinstance(perms, list) or not all(isinstance(p, str) for p in perms):
        raise ValueError(f"catalog role {entry['name']}: permissions must be a list of strings")
    return CatalogRole(
        name=entry["name"].strip(),
        permissions=tuple(perms),
        description=str(entry.get("description") or ""),
    )


def _permission_from_entry(entry: Any) -> CatalogPermission:
    if isinstance(entry, str) and entry.strip():
        return CatalogPermission(name=entry.strip())
    if isinstance(entry, dict) and isinstance(entry.get("name"), str) and entry["name"].strip():
        return CatalogPermission(name=entry["name"].strip(), description=str(entry.get("description") or ""))
    raise ValueError("catalog permission entries need a non-empty 'name'")


def decode_chunks(chunks: Sequence[bytes]) -> Tuple[Dict[str, CatalogRole], Dict[str, CatalogPermission]]:
    """Merge chunk payloads into role and permission maps.

    Raises:
        ValueError: a chunk is not a JSON object of the documented shape.
    """
    roles: Dict[str, CatalogRole] = {}
    permissions: Dict[str, CatalogPermission] = {}
    for index, chunk in enumerate(chunks):
        try:
            doc = json.loads(chunk.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"chunk {index} is not valid JSON: {exc}") from exc
        if not isinstance(doc, dict):
            raise ValueError(f"chunk {index} must be a JSON object")
        for entry in doc.get("roles") or []:
            role = _role_from_entry(entry)
            roles[role.name] = role
        for entry in doc.get("permissions") or []:
            perm = _permission_from_entry(entry)
            permissions[perm.name] = perm
    return roles, permissions


def encode_chunks(
    roles: Sequence[CatalogRole],
    permissions: Sequence[CatalogPermission],
    *,
    chunk_size: int = 100,
) -> List[bytes]:
    """Split roles and permissions into chunk payloads of at most `chunk_size` entries each."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    entries: List[Tuple[str, dict]] = [
        ("roles", {"name": r.name, "permissions": list(r.permissions), "description": r.description})
        for r in roles
    ]
    entries += [("permissions", {"name": p.name, "description": p.description}) for p in permissions]
    if not entries:
        return [json.dumps({"roles": [], "permissions": []}, sort_keys=True).encode("utf-8")]
    chunks: List[bytes] = []
    for start in range(0, len(entries), chunk_size):
        doc: Dict[str, list] = {"roles": [], "permissions": []}
        for key, value in entries[start : start + chunk_size]:
            doc[key].append(value)
        chunks.append(json.dumps(doc, sort_keys=True).encode("utf-8"))
    return chunks


__all__ = ["catalog_checksum", "decode_chunks", "encode_chunks"]
