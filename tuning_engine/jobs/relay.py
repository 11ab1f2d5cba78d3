"""
Event relay: fan-out of job changes to live subscribers.

Upstream changes arrive from one or more ChangeSources (store change
notification or periodic polling) and are delivered to every matching
subscriber through a bounded per-subscriber buffer.

Delivery contract per subscriber:
- a snapshot event first (job row, all metrics, all logs)
- then increments: job rows by revision, metrics by step, logs by sequence
- duplicates (key <= last delivered for that kind) suppressed
- a subscriber whose buffer overflows is dropped and must re-attach

Event format (dict, JSON-compatible):
    {"type": "snapshot", "job_id": ..., "data": {"job": {...}, "metrics": [...], "logs": [...]}}
    {"type": "job" | "metric" | "log", "job_id": ..., "key": 12, "data": {...}}

Usage:
    relay = EventRelay(store)
    relay.start()
    sub = relay.attach(job_id)
    for event in sub:
        ...
"""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.logger import log_event
from tuning_engine.jobs.errors import JobNotFound, SubscriberDropped
from tuning_engine.jobs.models import ChangeEvent, ChangeKind, Job
from tuning_engine.jobs.store import JobStore

logger = logging.getLogger(__name__)

EventSink = Callable[[ChangeEvent], None]

_DROPPED = object()
_CLOSED = object()


# =============================================================================
# Sources
# =============================================================================

class ChangeSource(ABC):
    """Pluggable upstream of change events."""

    @abstractmethod
    def start(self, sink: EventSink) -> None:
        """Begin forwarding ChangeEvents to sink."""

    @abstractmethod
    def stop(self) -> None:
        """Stop forwarding."""


class StoreChangeSource(ChangeSource):
    """Push source backed by the store's row-level change notification."""

    def __init__(self, store: JobStore):
        self.store = store
        self._remove: Optional[Callable[[], None]] = None

    def start(self, sink: EventSink) -> None:
        if self._remove is None:
            self._remove = self.store.add_listener(sink)

    def stop(self) -> None:
        if self._remove is not None:
            self._remove()
            self._remove = None


class StorePollingSource(ChangeSource):
    """
    Poll source: periodically reads the stores for rows past the last seen
    keys. Useful where change notification is unavailable or unreliable.
    """

    def __init__(self, store: JobStore, interval_seconds: float = 1.0, max_jobs: int = 1000):
        self.store = store
        self.interval_seconds = interval_seconds
        self.max_jobs = max_jobs
        self._sink: Optional[EventSink] = None
        self._seen: Dict[Tuple[ChangeKind, str], int] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self, sink: EventSink) -> None:
        self._sink = sink
        self._prime()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="relay-poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_seconds + 1.0)
            self._thread = None

    def _prime(self) -> None:
        """Record current keys so only later changes are emitted."""
        for job in self.store.list_jobs(limit=self.max_jobs):
            self._seen[(ChangeKind.JOB, job.id)] = job.revision
            step = self.store.last_metric_step(job.id)
            if step is not None:
                self._seen[(ChangeKind.METRIC, job.id)] = step
            seq = self.store.last_log_sequence(job.id)
            if seq is not None:
                self._seen[(ChangeKind.LOG, job.id)] = seq

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.poll_once()
            except Exception as e:
                logger.error("Relay poll failed: %s", e, exc_info=True)

    def poll_once(self) -> int:
        """Emit every change since the previous poll. Returns events emitted."""
        if self._sink is None:
            return 0
        emitted = 0
        for job in self.store.list_jobs(limit=self.max_jobs):
            job_key = (ChangeKind.JOB, job.id)
            changed = job.revision > self._seen.get(job_key, 0)
            if changed:
                self._seen[job_key] = job.revision
                self._sink(ChangeEvent.for_job(job))
                emitted += 1
            if job.is_terminal and not changed:
                continue

            metric_key = (ChangeKind.METRIC, job.id)
            for point in self.store.list_metrics(job.id, after_step=self._seen.get(metric_key)):
                self._seen[metric_key] = point.step
                self._sink(ChangeEvent.for_metric(point))
                emitted += 1

            log_key = (ChangeKind.LOG, job.id)
            for line in self.store.list_logs(job.id, after_sequence=self._seen.get(log_key)):
                self._seen[log_key] = line.sequence
                self._sink(ChangeEvent.for_log(line))
                emitted += 1
        return emitted


# =============================================================================
# Subscriptions
# =============================================================================

class Subscription:
    """
    One subscriber's view of the relay.

    Reads are thread-safe; get() blocks up to timeout and returns None when
    nothing arrived. Raises SubscriberDropped after a buffer overflow.
    """

    def __init__(
        self,
        relay: "EventRelay",
        buffer_size: int,
        job_id: Optional[str] = None,
        owner: Optional[str] = None,
    ):
        self.relay = relay
        self.job_id = job_id
        self.owner = owner
        self.buffer_size = max(1, int(buffer_size))
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=self.buffer_size + 1)
        self._last: Dict[Tuple[ChangeKind, str], int] = {}
        self._pending: Optional[List[ChangeEvent]] = []
        self._dropped = False
        self._closed = False

    @property
    def is_collection(self) -> bool:
        return self.job_id is None

    @property
    def dropped(self) -> bool:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    # -- relay side (called with the relay lock held) --------------------------

    def _matches(self, event: ChangeEvent) -> bool:
        if self.is_collection:
            return event.kind == ChangeKind.JOB and (
                self.owner is None or event.payload.get("owner") == self.owner
            )
        return event.job_id == self.job_id

    def _put(self, item: Dict[str, Any]) -> bool:
        # One slot is reserved for the drop marker
        if self._queue.qsize() >= self.buffer_size:
            self._drop()
            return False
        self._queue.put_nowait(item)
        return True

    def _drop(self) -> None:
        self._dropped = True
        self._pending = None
        self._drain()
        self._queue.put_nowait(_DROPPED)

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def _offer(self, event: ChangeEvent) -> bool:
        """Buffer or deliver an event. Returns False if the subscriber overflowed."""
        if self._dropped or self._closed:
            return False
        if self._pending is not None:
            self._pending.append(event)
            return True
        key = (event.kind, event.job_id)
        if event.key <= self._last.get(key, -1):
            return True
        self._last[key] = event.key
        return self._put({
            "type": event.kind.value,
            "job_id": event.job_id,
            "key": event.key,
            "data": event.payload,
        })

    def _begin(self, snapshot: Dict[str, Any], keys: Dict[Tuple[ChangeKind, str], int]) -> bool:
        """Deliver the snapshot, then replay events that arrived while it was read."""
        pending = self._pending or []
        self._pending = None
        self._last.update(keys)
        if not self._put(snapshot):
            return False
        for event in pending:
            if not self._offer(event):
                return False
        return True

    # -- reader side ------------------------------------------------------------

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Next event, or None on timeout/close.

        Raises:
            SubscriberDropped: the buffer overflowed; re-attach for a fresh snapshot
        """
        if self._closed:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _DROPPED:
            self._queue.put_nowait(_DROPPED)
            raise SubscriberDropped(
                f"Subscriber for {self.job_id or 'job list'} fell behind "
                f"(buffer {self.buffer_size}); re-attach"
            )
        if item is _CLOSED:
            return None
        return item

    def __iter__(self):
        while not self._closed:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event

    def close(self) -> None:
        """Detach. Buffered events are discarded; other subscribers are unaffected."""
        if self._closed:
            return
        self.relay._detach(self)
        self._closed = True
        self._drain()
        self._queue.put_nowait(_CLOSED)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# =============================================================================
# Relay
# =============================================================================

class EventRelay:
    """
    Read-only fan-out of store changes to subscribers.

    Thread-safe. Sources call publish() from their own threads; a slow
    subscriber only ever fills its own buffer.

    Example:
        >>> relay = EventRelay(store, buffer_size=256)
        >>> relay.start()
        >>> with relay.attach(job.id) as sub:
        ...     snapshot = sub.get(timeout=1.0)
    """

    def __init__(
        self,
        store: JobStore,
        sources: Optional[List[ChangeSource]] = None,
        buffer_size: int = 256,
    ):
        self.store = store
        self.sources = sources if sources is not None else [StoreChangeSource(store)]
        self.buffer_size = buffer_size
        self._lock = threading.Lock()
        self._subscribers: List[Subscription] = []
        self._started = False
        self._dropped_total = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        if self._started:
            return
        for source in self.sources:
            source.start(self.publish)
        self._started = True
        logger.info("Event relay started with %d source(s)", len(self.sources))

    def stop(self) -> None:
        for source in self.sources:
            source.stop()
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub.close()
        self._started = False
        logger.info("Event relay stopped")

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"subscribers": len(self._subscribers), "dropped": self._dropped_total}

    # =========================================================================
    # Subscribe
    # =========================================================================

    def attach(self, job_id: str, buffer_size: Optional[int] = None) -> Subscription:
        """
        Subscribe to one job.

        The subscription is registered before the snapshot is read so no
        change committed in between is lost; the stores are read without
        holding the relay lock.

        Raises:
            JobNotFound: unknown job
        """
        sub = Subscription(self, buffer_size or self.buffer_size, job_id=job_id)
        self._register(sub)
        try:
            job = self.store.get_job(job_id)
            if job is None:
                raise JobNotFound(job_id)
            metrics = self.store.list_metrics(job_id)
            logs = self.store.list_logs(job_id)
        except Exception:
            self._detach(sub)
            raise

        snapshot = {
            "type": "snapshot",
            "job_id": job_id,
            "data": {
                "job": job.to_dict(),
                "metrics": [m.to_dict() for m in metrics],
                "logs": [l.to_dict() for l in logs],
            },
        }
        keys = {(ChangeKind.JOB, job_id): job.revision}
        if metrics:
            keys[(ChangeKind.METRIC, job_id)] = metrics[-1].step
        if logs:
            keys[(ChangeKind.LOG, job_id)] = logs[-1].sequence
        self._activate(sub, snapshot, keys)
        logger.debug("Subscriber attached to job %s (%d metrics, %d logs in snapshot)",
                     job_id[:8], len(metrics), len(logs))
        return sub

    def attach_collection(
        self,
        owner: Optional[str] = None,
        limit: int = 100,
        buffer_size: Optional[int] = None,
    ) -> Subscription:
        """Subscribe to job-row changes of all jobs (optionally one owner's)."""
        sub = Subscription(self, buffer_size or self.buffer_size, owner=owner)
        self._register(sub)
        try:
            jobs: List[Job] = self.store.list_jobs(owner=owner, limit=limit)
        except Exception:
            self._detach(sub)
            raise
        snapshot = {
            "type": "snapshot",
            "job_id": None,
            "data": {"jobs": [j.to_dict() for j in jobs]},
        }
        keys = {(ChangeKind.JOB, j.id): j.revision for j in jobs}
        self._activate(sub, snapshot, keys)
        return sub

    def _register(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers.append(sub)

    def _activate(self, sub: Subscription, snapshot: Dict[str, Any], keys) -> None:
        with self._lock:
            if not sub._begin(snapshot, keys):
                self._remove_dropped(sub)

    def _detach(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def _remove_dropped(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)
        self._dropped_total += 1
        log_event(logger, logging.WARNING, "subscriber_dropped",
                  job_id=(sub.job_id or "*")[:8], buffer_size=sub.buffer_size)

    # =========================================================================
    # Publish
    # =========================================================================

    def publish(self, event: ChangeEvent) -> None:
        """Deliver one upstream change to every matching subscriber."""
        with self._lock:
            for sub in list(self._subscribers):
                if not sub._matches(event):
                    continue
                if not sub._offer(event):
                    self._remove_dropped(sub)
