"""Durable object storage."""

from ai_translate.storage.blob import (
    BlobStorage,
    FileBlobStorage,
    InMemoryBlobStorage,
    Namespace,
    Retention,
)

__all__ = ["BlobStorage", "FileBlobStorage", "InMemoryBlobStorage", "Namespace", "Retention"]
