from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock

Key = tuple[str, str]


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class TickRecord:
    namespace: str
    name: str
    state: str  # ok|requeue|error
    message: str
    requeue_after: float | None = None
    failures: int = 0
    updated_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory record of the last tick per OneAgent instance."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.ticks: dict[Key, TickRecord] = {}
        self.fail_counts: dict[Key, int] = {}  # key -> consecutive failed ticks

    def record(self, rec: TickRecord) -> None:
        with self.lock:
            rec.updated_at = utc_now()
            self.ticks[(rec.namespace, rec.name)] = rec

    def get(self, namespace: str, name: str) -> TickRecord | None:
        with self.lock:
            return self.ticks.get((namespace, name))

    def list(self) -> list[TickRecord]:
        with self.lock:
            return [self.ticks[k] for k in sorted(self.ticks)]

    def mark_failure(self, key: Key) -> int:
        """Count a failed tick; returns the number of consecutive failures."""
        with self.lock:
            self.fail_counts[key] = self.fail_counts.get(key, 0) + 1
            return self.fail_counts[key]

    def reset_failures(self, key: Key) -> None:
        with self.lock:
            self.fail_counts.pop(key, None)

    def forget(self, key: Key) -> None:
        """Drop everything known about a deleted instance."""
        with self.lock:
            self.ticks.pop(key, None)
            self.fail_counts.pop(key, None)
