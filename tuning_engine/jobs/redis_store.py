"""
Redis-based job store shared by the API and reconciler processes.

This module provides:
- Job row persistence with compare-and-set on revision (WATCH/MULTI)
- Append-only metric and log tables (sorted sets keyed by step/sequence)
- Row-level change notification over pub/sub

Redis Data Structures:
- job:{id}: HASH - job row
- jobs:index: ZSET - job ids scored by created_at (newest first listing)
- job:{id}:metrics: ZSET - metric points (JSON) scored by step
- job:{id}:logs: ZSET - log lines (JSON) scored by sequence
- jobs:changes: CHANNEL - ChangeEvent JSON for every committed write
"""

import dataclasses
import json
import logging
import threading
from typing import Any, Dict, List, Optional

import redis
from redis.exceptions import RedisError, WatchError

from tuning_engine.jobs.errors import ConcurrentModification, JobNotFound, StoreWriteFailure
from tuning_engine.jobs.models import ChangeEvent, Job, LogLine, MetricPoint, utcnow
from tuning_engine.jobs.store import ChangeListener, JobStore

logger = logging.getLogger(__name__)


class RedisJobStore(JobStore):
    """
    Redis-backed JobStore.

    Thread-safe: uses a connection pool; writes are atomic transactions
    that also publish the change event, so a subscriber never sees a
    notification for an uncommitted row.

    Example:
        >>> store = RedisJobStore("redis://localhost:6379")
        >>> store.insert_job(job)
        >>> store.update_job(job.id, {"progress": 40}, expected_revision=1)
    """

    JOB_PREFIX = "job:"
    JOB_INDEX_KEY = "jobs:index"
    CHANGES_CHANNEL = "jobs:changes"
    # Retries for WATCH conflicts when no expected revision is given
    MAX_WATCH_RETRIES = 5
    # Backoff between change-channel resubscribe attempts
    RESUBSCRIBE_BACKOFF_SECONDS = 0.5
    MAX_RESUBSCRIBE_BACKOFF_SECONDS = 30.0

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        db: int = 0,
        socket_timeout: float = 5.0,
        client: Optional[redis.Redis] = None
    ):
        """
        Initialize Redis connection.

        Args:
            redis_url: Redis connection URL (e.g., redis://localhost:6379)
            db: Redis database number
            socket_timeout: Seconds before a blocked Redis call fails
            client: Pre-built client (tests); skips pool creation
        """
        super().__init__()
        self.redis_url = redis_url
        self.pool = None
        if client is not None:
            self.redis = client
        else:
            self.pool = redis.ConnectionPool.from_url(
                redis_url,
                db=db,
                decode_responses=False,
                max_connections=20,
                socket_timeout=socket_timeout,
            )
            self.redis = redis.Redis(connection_pool=self.pool)

        self._pubsub_thread: Optional[threading.Thread] = None
        self._pubsub_stop = threading.Event()
        self._pubsub_lock = threading.Lock()

        try:
            self.redis.ping()
            logger.info("Connected to Redis at %s", redis_url)
        except RedisError as e:
            logger.error("Failed to connect to Redis: %s", e)
            raise

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except RedisError:
            return False

    def close(self):
        """Stop the notification thread and close connections."""
        self._pubsub_stop.set()
        if self._pubsub_thread is not None:
            self._pubsub_thread.join(timeout=2.0)
        super().close()
        if self.pool is not None:
            self.pool.disconnect()
        logger.info("Redis connections closed")

    # =========================================================================
    # Keys
    # =========================================================================

    def _job_key(self, job_id: str) -> str:
        return f"{self.JOB_PREFIX}{job_id}"

    def _metrics_key(self, job_id: str) -> str:
        return f"{self.JOB_PREFIX}{job_id}:metrics"

    def _logs_key(self, job_id: str) -> str:
        return f"{self.JOB_PREFIX}{job_id}:logs"

    # =========================================================================
    # Job State Operations
    # =========================================================================

    def insert_job(self, job: Job) -> Job:
        """
        Store a new job row and index it.

        Uses a transaction so the row, index entry and change event are
        committed together.
        """
        stored = dataclasses.replace(job, revision=1, updated_at=utcnow())
        event = ChangeEvent.for_job(stored)
        try:
            pipe = self.redis.pipeline()
            pipe.hset(self._job_key(job.id), mapping=stored.to_redis_hash())
            pipe.zadd(self.JOB_INDEX_KEY, {job.id: stored.created_at.timestamp()})
            pipe.publish(self.CHANGES_CHANNEL, json.dumps(event.to_dict()))
            pipe.execute()
        except RedisError as e:
            logger.error("Failed to insert job %s: %s", job.id[:8], e)
            raise StoreWriteFailure(f"Failed to insert job {job.id}: {e}") from e
        logger.info("Inserted job %s", job.id[:8])
        return stored

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            data = self.redis.hgetall(self._job_key(job_id))
            if not data:
                return None
            return Job.from_dict(data)
        except RedisError as e:
            logger.error("Failed to get job %s: %s", job_id[:8], e)
            return None

    def update_job(self, job_id, updates, expected_revision=None):
        """
        Update job fields with optimistic locking on the row.

        Raises:
            JobNotFound, ConcurrentModification, StoreWriteFailure
        """
        job_key = self._job_key(job_id)
        for _ in range(self.MAX_WATCH_RETRIES):
            try:
                with self.redis.pipeline() as pipe:
                    pipe.watch(job_key)
                    data = pipe.hgetall(job_key)
                    if not data:
                        raise JobNotFound(job_id)
                    job = Job.from_dict(data)
                    if expected_revision is not None and job.revision != expected_revision:
                        raise ConcurrentModification(job_id, expected_revision, job.revision)
                    if not updates:
                        return job
                    updated = self.apply_updates(job, updates)
                    event = ChangeEvent.for_job(updated)

                    pipe.multi()
                    pipe.hset(job_key, mapping=updated.to_redis_hash())
                    pipe.publish(self.CHANGES_CHANNEL, json.dumps(event.to_dict()))
                    pipe.execute()
                    logger.debug("Updated job %s: %s", job_id[:8], list(updates.keys()))
                    return updated
            except WatchError:
                if expected_revision is not None:
                    current = self.get_job(job_id)
                    raise ConcurrentModification(
                        job_id, expected_revision, current.revision if current else -1
                    )
                logger.debug("Concurrent write on job %s, retrying", job_id[:8])
            except RedisError as e:
                logger.error("Failed to update job %s: %s", job_id[:8], e)
                raise StoreWriteFailure(f"Failed to update job {job_id}: {e}") from e
        raise StoreWriteFailure(f"Failed to update job {job_id}: too many concurrent writes")

    def list_jobs(self, owner=None, status=None, limit=100, offset=0):
        """
        List jobs with optional filtering (newest first).

        Filters are applied client-side after reading the index.
        """
        try:
            job_ids = self.redis.zrevrange(self.JOB_INDEX_KEY, 0, -1)
            jobs = []
            for raw_id in job_ids:
                job_id = raw_id.decode() if isinstance(raw_id, bytes) else raw_id
                job = self.get_job(job_id)
                if job is None:
                    continue
                if owner is not None and job.owner != owner:
                    continue
                if status is not None and job.status != status:
                    continue
                jobs.append(job)
            return jobs[offset:offset + limit]
        except RedisError as e:
            logger.error("Failed to list jobs: %s", e)
            return []

    # =========================================================================
    # Metrics / Logs
    # =========================================================================

    def _append(self, key: str, job_id: str, items: List[Any], make_event) -> List[Any]:
        """Append items whose key exceeds the current maximum score."""
        try:
            with self.redis.pipeline() as pipe:
                for _ in range(self.MAX_WATCH_RETRIES):
                    try:
                        pipe.watch(key)
                        top = pipe.zrevrange(key, 0, 0, withscores=True)
                        last = int(top[0][1]) if top else None
                        accepted = []
                        for item in sorted(items, key=lambda i: i.key):
                            if last is not None and item.key <= last:
                                continue
                            accepted.append(item)
                            last = item.key
                        if not accepted:
                            pipe.unwatch()
                            return []
                        pipe.multi()
                        pipe.zadd(key, {json.dumps(i.to_dict()): i.key for i in accepted})
                        for item in accepted:
                            pipe.publish(self.CHANGES_CHANNEL, json.dumps(make_event(item).to_dict()))
                        pipe.execute()
                        return accepted
                    except WatchError:
                        continue
        except RedisError as e:
            logger.error("Failed to append to %s for job %s: %s", key, job_id[:8], e)
            raise StoreWriteFailure(f"Failed to append for job {job_id}: {e}") from e
        raise StoreWriteFailure(f"Failed to append for job {job_id}: too many concurrent writes")

    def append_metrics(self, job_id, points):
        return self._append(self._metrics_key(job_id), job_id, list(points), ChangeEvent.for_metric)

    def append_logs(self, job_id, lines):
        return self._append(self._logs_key(job_id), job_id, list(lines), ChangeEvent.for_log)

    def _range(self, key: str, after: Optional[int]) -> List[Dict[str, Any]]:
        low = f"({after}" if after is not None else "-inf"
        try:
            raw = self.redis.zrangebyscore(key, low, "+inf")
        except RedisError as e:
            logger.error("Failed to read %s: %s", key, e)
            return []
        return [json.loads(r.decode() if isinstance(r, bytes) else r) for r in raw]

    def list_metrics(self, job_id, after_step=None):
        return [MetricPoint.from_dict(d) for d in self._range(self._metrics_key(job_id), after_step)]

    def list_logs(self, job_id, after_sequence=None):
        return [LogLine.from_dict(d) for d in self._range(self._logs_key(job_id), after_sequence)]

    def last_metric_step(self, job_id):
        return self._last_score(self._metrics_key(job_id))

    def last_log_sequence(self, job_id):
        return self._last_score(self._logs_key(job_id))

    def _last_score(self, key: str) -> Optional[int]:
        try:
            top = self.redis.zrevrange(key, 0, 0, withscores=True)
        except RedisError as e:
            logger.error("Failed to read %s: %s", key, e)
            return None
        return int(top[0][1]) if top else None

    # =========================================================================
    # Pub/Sub Operations
    # =========================================================================

    def add_listener(self, listener: ChangeListener):
        remove = super().add_listener(listener)
        self._ensure_subscriber()
        return remove

    def _ensure_subscriber(self) -> None:
        with self._pubsub_lock:
            if self._pubsub_thread is not None and self._pubsub_thread.is_alive():
                return
            self._pubsub_stop.clear()
            self._pubsub_thread = threading.Thread(
                target=self._listen, name="redis-job-changes", daemon=True
            )
            self._pubsub_thread.start()

    def _listen(self) -> None:
        """Forward pub/sub change messages to listeners until stopped, resubscribing on errors."""
        delay = self.RESUBSCRIBE_BACKOFF_SECONDS
        while not self._pubsub_stop.is_set():
            pubsub = self.redis.pubsub()
            try:
                pubsub.subscribe(self.CHANGES_CHANNEL)
                logger.debug("Subscribed to %s", self.CHANGES_CHANNEL)
                delay = self.RESUBSCRIBE_BACKOFF_SECONDS
                self._consume(pubsub)
            except RedisError as e:
                logger.error("Change notification error, resubscribing in %.1fs: %s", delay, e)
                self._pubsub_stop.wait(delay)
                delay = min(delay * 2, self.MAX_RESUBSCRIBE_BACKOFF_SECONDS)
            finally:
                try:
                    pubsub.unsubscribe(self.CHANGES_CHANNEL)
                    pubsub.close()
                except RedisError:
                    pass

    def _consume(self, pubsub) -> None:
        while not self._pubsub_stop.is_set():
            message = pubsub.get_message(timeout=1.0)
            if not message or message["type"] != "message":
                continue
            data = message["data"]
            if isinstance(data, bytes):
                data = data.decode()
            try:
                event = ChangeEvent.from_dict(json.loads(data))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning("Invalid change event: %s (%s)", data, e)
                continue
            self._notify(event)
