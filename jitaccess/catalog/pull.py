"""
Catalog refresh driver: pulls a provider's RBAC catalog and commits it.

Intent:
    Glue between the Provider Registry (RBAC capability) and the
    CatalogSynchronizer, used by the worker and operators to refresh one
    provider's catalog in a single call.
"""

from __future__ import annotations

import logging

from jitaccess.errors import SynchronizationError
from jitaccess.providers.registry import ProviderRegistry

from .codec import catalog_checksum, encode_chunks
from .sync import CatalogSynchronizer

LOG = logging.getLogger(__name__)


def pull_catalog(
    synchronizer: CatalogSynchronizer,
    providers: ProviderRegistry,
    provider_id: str,
    version: str,
    *,
    chunk_size: int = 100,
) -> str:
    """Fetch roles/permissions via RBAC and install them as `version`.

    Raises:
        CapabilityError: the provider does not implement RBAC.
        SynchronizationError: the session could not be opened or committed.
        ProviderCallError: listing the catalog failed (no session is opened).
    """
    rbac = providers.rbac(provider_id)
    roles = list(rbac.list_roles())
    permissions = list(rbac.list_permissions())
    chunks = encode_chunks(roles, permissions, chunk_size=chunk_size)

    session_id = synchronizer.start(provider_id, version)
    try:
        for sequence, payload in enumerate(chunks):
            synchronizer.push_chunk(session_id, sequence, payload)
        installed = synchronizer.commit(session_id, catalog_checksum(chunks))
    except SynchronizationError:
        raise
    except Exception:
        synchronizer.abort(session_id, reason="driver error")
        raise
    LOG.info(
        "catalog.pull.done provider=%s version=%s roles=%s permissions=%s chunks=%s",
        provider_id,
        installed,
        len(roles),
        len(permissions),
        len(chunks),
    )
    return installed


__all__ = ["pull_catalog"]
