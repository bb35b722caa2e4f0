from __future__ import annotations

import logging
import time
from threading import Condition, Event, Lock, Thread
from typing import Any, Callable, Protocol

from .models import KIND
from .reconciler import Result
from .runtime import Key, RuntimeState, TickRecord
from .settings import settings
from .store import Store, StoreError

logger = logging.getLogger(__name__)

# Selects every DaemonSet the operator owns; the "oneagent" label names the instance.
OWNED_LABELS = {"dynatrace": "oneagent"}


class TickRunner(Protocol):
    def reconcile(self, namespace: str, name: str) -> Result: ...


def owner_key(kind: str, obj: dict[str, Any]) -> Key | None:
    """Key of the OneAgent instance an observed object belongs to."""
    metadata = obj.get("metadata") or {}
    if kind == KIND:
        name = metadata.get("name")
    else:
        name = (metadata.get("labels") or {}).get("oneagent")
    if not name:
        return None
    return metadata.get("namespace", ""), name


class WorkQueue:
    """Delayed queue of OneAgent keys.

    Each key is scheduled at most once and is never handed to two workers at
    the same time. Adding a key that is being processed schedules it for
    after the current tick.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._cond = Condition()
        self._due: dict[Key, float] = {}
        self._active: set[Key] = set()
        self._after_active: dict[Key, float] = {}
        self._shutdown = False

    def add(self, key: Key, delay: float = 0.0) -> None:
        with self._cond:
            due = self.clock() + max(0.0, delay)
            target = self._after_active if key in self._active else self._due
            if key not in target or due < target[key]:
                target[key] = due
            self._cond.notify_all()

    def add_if_absent(self, key: Key) -> bool:
        with self._cond:
            if key in self._due or key in self._active:
                return False
            self._due[key] = self.clock()
            self._cond.notify_all()
            return True

    def get(self, timeout: float | None = None) -> Key | None:
        """Block until a key is due; None on timeout or shutdown."""
        with self._cond:
            deadline = None if timeout is None else self.clock() + timeout
            while not self._shutdown:
                now = self.clock()
                ready = [(due, key) for key, due in self._due.items() if due <= now]
                if ready:
                    _, key = min(ready)
                    del self._due[key]
                    self._active.add(key)
                    return key

                wait = min(self._due.values()) - now if self._due else None
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)
            return None

    def done(self, key: Key) -> None:
        with self._cond:
            self._active.discard(key)
            if key in self._after_active:
                due = self._after_active.pop(key)
                if key not in self._due or due < self._due[key]:
                    self._due[key] = due
            self._cond.notify_all()

    def due_at(self, key: Key) -> float | None:
        with self._cond:
            return self._due.get(key, self._after_active.get(key))

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._due)


class Controller:
    """Dispatches reconcile ticks for every OneAgent resource.

    Watch threads follow OneAgent objects and the DaemonSets they own, a
    resync thread relists both as a fallback, and worker threads run ticks
    and reschedule each instance according to the tick result.
    """

    def __init__(
        self,
        store: Store,
        reconciler: TickRunner,
        runtime: RuntimeState,
        namespace: str | None = None,
        workers: int | None = None,
        resync_interval_s: float | None = None,
        backoff_base_s: float | None = None,
        backoff_max_s: float | None = None,
        queue: WorkQueue | None = None,
        watch_timeout_s: int | None = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.runtime = runtime
        self.namespace = namespace
        self.workers = max(1, int(settings.workers if workers is None else workers))
        self.resync_interval_s = settings.resync_interval_s if resync_interval_s is None else resync_interval_s
        self.backoff_base_s = settings.backoff_base_s if backoff_base_s is None else backoff_base_s
        self.backoff_max_s = settings.backoff_max_s if backoff_max_s is None else backoff_max_s
        self.watch_timeout_s = settings.watch_timeout_s if watch_timeout_s is None else watch_timeout_s
        self.queue = queue if queue is not None else WorkQueue()
        self._stop = Event()
        self._threads: list[Thread] = []
        self._seen_lock = Lock()
        self._seen: dict[str, dict[Key, str]] = {KIND: {}, "DaemonSet": {}}  # kind -> key -> version marker

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self._stop.clear()
        self._threads = [
            Thread(target=self._resync_loop, name="oneagent-resync", daemon=True),
            Thread(target=self._watch_loop, args=(KIND, None), name="oneagent-watch", daemon=True),
            Thread(target=self._watch_loop, args=("DaemonSet", OWNED_LABELS), name="daemonset-watch", daemon=True),
        ]
        for i in range(self.workers):
            self._threads.append(Thread(target=self._worker_loop, name=f"oneagent-worker-{i}", daemon=True))
        for t in self._threads:
            t.start()
        logger.info(f"Controller started with {self.workers} worker(s)")

    def stop(self) -> None:
        self._stop.set()
        self.queue.shutdown()

    def observe(self, kind: str, obj: dict[str, Any], deleted: bool = False) -> bool:
        """Remember the version of obj and queue its instance when it changed.

        DaemonSets are compared by generation so status churn during a
        rollout does not trigger ticks.
        """
        key = owner_key(kind, obj)
        if key is None:
            return False
        if deleted:
            return self._mark(kind, key, None)
        metadata = obj.get("metadata") or {}
        version = metadata.get("generation") if kind == "DaemonSet" else None
        return self._mark(kind, key, str(version or metadata.get("resourceVersion") or ""))

    def _mark(self, kind: str, key: Key, marker: str | None) -> bool:
        with self._seen_lock:
            seen = self._seen[kind]
            if seen.get(key) == marker:
                return False
            if marker is None:
                seen.pop(key, None)
            else:
                seen[key] = marker
        self.queue.add(key)
        return True

    def resync(self) -> int:
        """Relist instances and owned DaemonSets; returns how many keys were queued."""
        queued: set[Key] = set()
        for kind, labels in ((KIND, None), ("DaemonSet", OWNED_LABELS)):
            present: set[Key] = set()
            for obj in self.store.list(kind, self.namespace, labels):
                key = owner_key(kind, obj)
                if key is None:
                    continue
                present.add(key)
                if self.observe(kind, obj):
                    queued.add(key)

            # deleted while no watch event reached us
            with self._seen_lock:
                gone = [key for key in self._seen[kind] if key not in present]
            for key in gone:
                if self._mark(kind, key, None):
                    queued.add(key)
        return len(queued)

    def backoff(self, failures: int) -> float:
        return min(self.backoff_base_s * 2 ** max(0, failures - 1), self.backoff_max_s)

    def _resync_loop(self) -> None:
        while not self._stop.is_set():
            try:
                queued = self.resync()
                if queued:
                    logger.info(f"Resync queued {queued} oneagent instance(s)")
            except StoreError as e:
                logger.error(f"Resync failed: {e}")
            self._stop.wait(max(1.0, self.resync_interval_s))

    def _watch_loop(self, kind: str, labels: dict[str, str] | None) -> None:
        delay = 1.0
        while not self._stop.is_set():
            try:
                for event_type, obj in self.store.watch(kind, self.namespace, labels, timeout_s=self.watch_timeout_s):
                    if self._stop.is_set():
                        break
                    self.observe(kind, obj, deleted=event_type == "DELETED")
                delay = 1.0
            except StoreError as e:
                logger.warning(f"Watch on {kind} failed, retrying in {delay:.0f}s: {e}")
                self._stop.wait(delay)
                delay = min(delay * 2, 30.0)

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            key = self.queue.get(timeout=1.0)
            if key is None:
                continue
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def process(self, key: Key) -> None:
        """Run one tick for key and schedule the next one."""
        namespace, name = key
        try:
            result = self.reconciler.reconcile(namespace, name)
        except Exception as e:
            failures = self.runtime.mark_failure(key)
            delay = self.backoff(failures)
            logger.error(f"Reconcile of {namespace}/{name} failed ({failures}x), retrying in {delay:.1f}s: {type(e).__name__}: {e}")
            self.runtime.record(
                TickRecord(namespace, name, "error", f"{type(e).__name__}: {e}", requeue_after=delay, failures=failures)
            )
            self.queue.add(key, delay)
            return

        self.runtime.reset_failures(key)
        if result.requeue:
            self.runtime.record(TickRecord(namespace, name, "requeue", "requeued immediately", requeue_after=0.0))
            self.queue.add(key)
        elif result.requeue_after is not None:
            self.runtime.record(
                TickRecord(namespace, name, "ok", f"next tick in {result.requeue_after:.0f}s", requeue_after=result.requeue_after)
            )
            self.queue.add(key, result.requeue_after)
        else:
            # Only a deleted instance ends without a next tick.
            self.runtime.forget(key)
            logger.info(f"Stopped tracking {namespace}/{name}")
