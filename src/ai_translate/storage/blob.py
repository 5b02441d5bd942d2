"""Durable object store for batch correlation snapshots and run reports."""

import json
import threading
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

import structlog
from pydantic import BaseModel

logger = structlog.get_logger()


class Namespace(str, Enum):
    """Top-level prefixes of the object store."""

    AI_TRANSLATE_BATCH = "ai_translate_batch"
    AI_TRANSLATE_REPORT = "ai_translate_report"
    JOB_INPUT = "job_input"


class Retention(str, Enum):
    """How long an entry must be kept."""

    MIN_1_DAY = "MIN_1_DAY"
    MIN_1_WEEK = "MIN_1_WEEK"
    PERMANENT = "PERMANENT"

    @classmethod
    def at_least_days(cls, days: int) -> "Retention":
        """Shortest retention keeping an entry for ``days`` days."""
        if days <= 1:
            return cls.MIN_1_DAY
        if days <= 7:
            return cls.MIN_1_WEEK
        return cls.PERMANENT

    def expires_at(self, created_at: datetime) -> Optional[datetime]:
        if self is Retention.MIN_1_DAY:
            return created_at + timedelta(days=1)
        if self is Retention.MIN_1_WEEK:
            return created_at + timedelta(weeks=1)
        return None


class BlobStorage(Protocol):
    """put/get by (namespace, key)."""

    def put(self, namespace: Namespace, key: str, content: str, retention: Retention) -> None:
        ...

    def get(self, namespace: Namespace, key: str) -> Optional[str]:
        ...


class _Entry(BaseModel):
    content: str
    retention: Retention
    created_at: datetime


class InMemoryBlobStorage:
    """Process-local store. Entries never expire while the process lives."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def put(self, namespace: Namespace, key: str, content: str, retention: Retention) -> None:
        with self._lock:
            self._entries[(namespace.value, key)] = content

    def get(self, namespace: Namespace, key: str) -> Optional[str]:
        with self._lock:
            return self._entries.get((namespace.value, key))


class FileBlobStorage:
    """Filesystem store: one JSON envelope per entry under ``<root>/<namespace>/<key>.json``.

    Keys may contain ``/`` and map to sub-directories. Entries older than their
    retention are still readable until purged; ``purge_expired`` removes them.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, namespace: Namespace, key: str) -> Path:
        if ".." in Path(key).parts:
            raise ValueError(f"Invalid blob key: {key}")
        return self.root / namespace.value / f"{key}.json"

    def put(self, namespace: Namespace, key: str, content: str, retention: Retention) -> None:
        path = self._path(namespace, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        entry = _Entry(content=content, retention=retention, created_at=datetime.now())
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(entry.model_dump(mode="json"), f, ensure_ascii=False)
        tmp_path.replace(path)
        logger.debug("blob_put", namespace=namespace.value, key=key, retention=retention.value)

    def get(self, namespace: Namespace, key: str) -> Optional[str]:
        path = self._path(namespace, key)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            entry = _Entry.model_validate(json.load(f))
        return entry.content

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete entries past their retention. Returns the number removed."""
        now = now or datetime.now()
        removed = 0
        for path in self.root.rglob("*.json"):
            with open(path, "r", encoding="utf-8") as f:
                entry = _Entry.model_validate(json.load(f))
            expires_at = entry.retention.expires_at(entry.created_at)
            if expires_at is not None and expires_at < now:
                path.unlink()
                removed += 1
        if removed:
            logger.info("blobs_purged", removed=removed)
        return removed
