"""Counters and timers for AI translate runs.

Metrics are kept in memory and pushed to subscribers as they are recorded:
- CLI subscribes → debug log lines
- an exporter can subscribe and forward to a real metrics backend
"""

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

logger = structlog.get_logger()

METRIC_PREFIX = "AiTranslateService"

MODE_BATCH = "batch"
MODE_NO_BATCH = "no_batch"
LOCALE_ALL = "all"
HAS_SCREENSHOT_NA = "n/a"
TAG_UNKNOWN = "unknown"


def metric_name(name: str) -> str:
    return f"{METRIC_PREFIX}.{name}"


def _sanitize(value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        return TAG_UNKNOWN
    return str(value)


def metric_tags(
    mode: Optional[str],
    repository: Optional[str],
    model: Optional[str],
    locale: Optional[str],
    has_screenshot: Optional[str],
) -> dict[str, str]:
    """Base tags shared by every AI translate metric."""
    return {
        "mode": _sanitize(mode),
        "repository": _sanitize(repository),
        "model": _sanitize(model),
        "locale": _sanitize(locale),
        "hasScreenshot": _sanitize(has_screenshot),
    }


def with_result(tags: dict[str, str], result: str) -> dict[str, str]:
    return {**tags, "result": result}


@dataclass
class MetricEvent:
    """A single recorded measurement."""

    kind: str  # "counter" or "timer"
    name: str
    tags: dict[str, str]
    value: float
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "name": self.name,
            "tags": self.tags,
            "value": self.value,
            "timestamp": self.timestamp,
        }


def _key(name: str, tags: dict[str, str]) -> tuple[str, frozenset]:
    return name, frozenset(tags.items())


class MetricsRegistry:
    """Thread-safe in-memory registry with synchronous subscribers."""

    def __init__(self) -> None:
        self._counters: dict[tuple[str, frozenset], float] = {}
        self._timers: dict[tuple[str, frozenset], list[float]] = {}
        self._subscribers: dict[str, Callable[[MetricEvent], None]] = {}
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[MetricEvent], None]) -> str:
        """Register a callback. Returns subscription ID for unsubscribe."""
        sub_id = str(uuid.uuid4())
        self._subscribers[sub_id] = callback
        return sub_id

    def unsubscribe(self, sub_id: str) -> None:
        """Remove a subscriber by ID."""
        self._subscribers.pop(sub_id, None)

    def _emit(self, event: MetricEvent) -> None:
        for callback in list(self._subscribers.values()):
            try:
                callback(event)
            except Exception as e:
                # A bad subscriber must not fail the run
                logger.warning("metrics_subscriber_failed", name=event.name, error=str(e))

    def increment(self, name: str, tags: dict[str, str], amount: float = 1.0) -> None:
        """Increment a counter. Non-positive amounts are ignored."""
        if amount <= 0:
            return
        full_name = metric_name(name)
        with self._lock:
            key = _key(full_name, tags)
            self._counters[key] = self._counters.get(key, 0.0) + amount
        self._emit(MetricEvent("counter", full_name, dict(tags), amount))

    def record(self, name: str, tags: dict[str, str], seconds: float) -> None:
        """Record a duration."""
        full_name = metric_name(name)
        with self._lock:
            self._timers.setdefault(_key(full_name, tags), []).append(seconds)
        self._emit(MetricEvent("timer", full_name, dict(tags), seconds))

    def count(self, name: str, **tags: str) -> float:
        """Sum of a counter over every series matching ``tags``."""
        full_name = metric_name(name)
        with self._lock:
            return sum(
                value
                for (series_name, series_tags), value in self._counters.items()
                if series_name == full_name and set(tags.items()) <= series_tags
            )

    def durations(self, name: str, **tags: str) -> list[float]:
        full_name = metric_name(name)
        with self._lock:
            return [
                d
                for (series_name, series_tags), values in self._timers.items()
                if series_name == full_name and set(tags.items()) <= series_tags
                for d in values
            ]
