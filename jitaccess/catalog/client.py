"""
HTTP client for the synchronization protocol exposed by `jitaccess.web`.

Design:
- Used by external catalog-refresh drivers that run next to a backend
  integration instead of inside the engine process.
- Uses requests under the hood; a 409 from the server is mapped back to
  SynchronizationError, other HTTP errors propagate as requests exceptions.
"""

from __future__ import annotations

import base64
import logging
from typing import Dict, Optional, Sequence

import requests

from jitaccess.errors import SynchronizationError
from jitaccess.roles.domain import CatalogPermission, CatalogRole

from .codec import catalog_checksum, encode_chunks

LOG = logging.getLogger(__name__)


class SyncClient:
    def __init__(self, base_url: str, *, token: str = "", timeout: float = 10) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _check(self, r) -> dict:
        if r.status_code == 409:
            detail = ""
            try:
                detail = str((r.json() or {}).get("detail") or "")
            except ValueError:
                detail = r.text
            raise SynchronizationError(detail or "synchronization conflict")
        r.raise_for_status()
        return r.json() or {}

    def _post(self, path: str, payload: dict) -> dict:
        r = requests.post(f"{self.base_url}{path}", headers=self._headers(), json=payload, timeout=self._timeout)
        return self._check(r)

    def start_session(self, provider_id: str, dataset_version: str, dataset: str = "catalog") -> str:
        data = self._post(
            "/sync/sessions",
            {"provider": provider_id, "datasetVersion": dataset_version, "dataset": dataset},
        )
        return str(data["sessionId"])

    def push_chunk(self, session_id: str, sequence: int, payload: bytes) -> bool:
        data = self._post(
            f"/sync/sessions/{session_id}/chunks",
            {"sequence": sequence, "payload": base64.b64encode(payload).decode("ascii")},
        )
        return bool(data.get("accepted"))

    def commit(self, session_id: str, checksum: str) -> str:
        data = self._post(f"/sync/sessions/{session_id}/commit", {"checksum": checksum})
        return str(data["installedVersion"])

    def abort_session(self, session_id: str) -> None:
        r = requests.delete(
            f"{self.base_url}/sync/sessions/{session_id}", headers=self._headers(), timeout=self._timeout
        )
        self._check(r)


def push_catalog(
    client: SyncClient,
    provider_id: str,
    version: str,
    roles: Sequence[CatalogRole],
    permissions: Sequence[CatalogPermission],
    *,
    chunk_size: int = 100,
    dataset: str = "catalog",
) -> str:
    """Upload a complete catalog through `client`; returns the installed version.

    A failed upload aborts the remote session so the (provider, dataset) slot
    is free for the next attempt. Sessions the server rejected (409) are
    already closed on its side.
    """
    chunks = encode_chunks(roles, permissions, chunk_size=chunk_size)
    session_id = client.start_session(provider_id, version, dataset)
    try:
        for sequence, payload in enumerate(chunks):
            if not client.push_chunk(session_id, sequence, payload):
                client.abort_session(session_id)
                raise SynchronizationError(f"chunk {sequence} was not accepted")
        return client.commit(session_id, catalog_checksum(chunks))
    except SynchronizationError:
        raise
    except Exception:
        LOG.warning("catalog.push.aborting session=%s provider=%s", session_id, provider_id)
        client.abort_session(session_id)
        raise


__all__ = ["SyncClient", "push_catalog"]
