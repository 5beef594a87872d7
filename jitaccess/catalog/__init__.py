"""Catalog Synchronizer: chunked, checksummed catalog refresh into the Role Registry."""

from .codec import catalog_checksum, decode_chunks, encode_chunks
from .pull import pull_catalog
from .sync import CatalogSession, CatalogSynchronizer

__all__ = [
    "CatalogSession",
    "CatalogSynchronizer",
    "catalog_checksum",
    "decode_chunks",
    "encode_chunks",
    "pull_catalog",
]
