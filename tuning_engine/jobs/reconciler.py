"""
Background reconciler.

Keeps every active job in step with the HPC backend: each tick schedules
JobManager.reconcile_job for every job with work to do, on a bounded
thread pool. A stalled backend call only occupies one worker, and a job
never has two passes in flight.

Usage:
    reconciler = Reconciler(manager, interval_seconds=5.0, worker_count=4)
    reconciler.start()      # background thread
    ...
    reconciler.stop()

    # or standalone
    python -m tuning_engine.jobs --config configs/defaults/orchestrator.yaml
"""

import logging
import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, Optional

from tuning_engine.jobs.manager import JobManager
from tuning_engine.jobs.models import utcnow

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Periodic reconciliation loop.

    Example:
        >>> reconciler = Reconciler(manager, interval_seconds=2.0)
        >>> reconciler.run_once()   # schedule one tick and wait for it
        3
    """

    def __init__(
        self,
        manager: JobManager,
        interval_seconds: float = 5.0,
        worker_count: int = 4
    ):
        """
        Initialize reconciler.

        Args:
            manager: JobManager that performs the per-job passes
            interval_seconds: Delay between ticks
            worker_count: Max concurrent per-job passes
        """
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.worker_count = max(1, int(worker_count))

        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight: Dict[str, Future] = {}
        self._in_flight_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._ticks = 0
        self._passes = 0
        self._last_tick_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.worker_count, thread_name_prefix="reconcile"
            )
        return self._executor

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the loop in a background thread."""
        if self.running:
            return
        self._stop.clear()
        self._ensure_executor()
        self._thread = threading.Thread(target=self.run, name="reconciler", daemon=True)
        self._thread.start()
        logger.info("Reconciler started (interval=%.1fs, workers=%d)",
                    self.interval_seconds, self.worker_count)

    def stop(self, wait: bool = True) -> None:
        """Stop scheduling; optionally wait for in-flight passes."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval_seconds + 5.0)
        self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("Reconciler stopped")

    def run(self) -> None:
        """
        Main loop. Blocks until stop() (or a shutdown signal in main()).
        """
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error("Reconcile tick failed: %s", e, exc_info=True)
            self._stop.wait(self.interval_seconds)

    # =========================================================================
    # Ticks
    # =========================================================================

    def tick(self) -> int:
        """
        Schedule a pass for every job with work to do that is not already in flight.

        Returns:
            Number of passes scheduled
        """
        executor = self._ensure_executor()
        jobs = self.manager.reconcilable_jobs()
        scheduled = 0
        with self._in_flight_lock:
            for job in jobs:
                future = self._in_flight.get(job.id)
                if future is not None and not future.done():
                    continue
                future = executor.submit(self._run_pass, job.id)
                self._in_flight[job.id] = future
                scheduled += 1
            self._ticks += 1
            self._last_tick_at = utcnow()
        if scheduled:
            logger.debug("Reconcile tick scheduled %d pass(es)", scheduled)
        return scheduled

    def _run_pass(self, job_id: str) -> bool:
        ran = False
        try:
            ran = self.manager.reconcile_job(job_id)
        finally:
            with self._in_flight_lock:
                self._in_flight.pop(job_id, None)
                if ran:
                    self._passes += 1
        return ran

    def run_once(self, timeout: Optional[float] = None) -> int:
        """Run one tick and wait for its passes to finish. Returns passes scheduled."""
        scheduled = self.tick()
        with self._in_flight_lock:
            futures = list(self._in_flight.values())
        for future in futures:
            future.result(timeout=timeout)
        return scheduled

    def stats(self) -> Dict[str, Any]:
        with self._in_flight_lock:
            return {
                "running": self.running,
                "interval_seconds": self.interval_seconds,
                "worker_count": self.worker_count,
                "in_flight": len(self._in_flight),
                "ticks": self._ticks,
                "passes": self._passes,
                "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            }


def build_store(settings):
    """Create the configured store backend."""
    if settings.store_backend == "memory":
        from tuning_engine.jobs.store import InMemoryJobStore
        return InMemoryJobStore()
    from tuning_engine.jobs.redis_store import RedisJobStore
    return RedisJobStore(settings.redis_url)


def main():
    """Entry point for the standalone reconciler process."""
    import argparse

    from core.config import OrchestratorSettings
    from core.logger import log_config, setup_logger
    from tuning_engine.jobs.hpc_client import HPCBackendClient

    parser = argparse.ArgumentParser(description="Fine-tuning job reconciler")
    parser.add_argument("--config", default=None,
                        help="Orchestrator YAML config (defaults to configs/defaults/orchestrator.yaml)")
    parser.add_argument("--redis-url", default=None,
                        help="Redis connection URL (overrides config/env)")
    parser.add_argument("--interval", type=float, default=None,
                        help="Seconds between reconcile ticks")
    parser.add_argument("--workers", type=int, default=None,
                        help="Max concurrent per-job passes")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level")
    args = parser.parse_args()

    setup_logger(level=getattr(logging, args.log_level))

    settings = OrchestratorSettings.load(args.config)
    if args.redis_url:
        settings.redis_url = args.redis_url
    if args.interval is not None:
        settings.reconcile_interval_seconds = args.interval
    if args.workers is not None:
        settings.reconcile_workers = args.workers
    log_config(logger, settings.to_dict(), title="Reconciler settings")

    manager = JobManager(build_store(settings), HPCBackendClient.from_settings(settings), settings)
    reconciler = Reconciler(
        manager,
        interval_seconds=settings.reconcile_interval_seconds,
        worker_count=settings.reconcile_workers,
    )

    def handle_signal(signum, frame):
        logger.info("Received signal %s, initiating shutdown...", signum)
        reconciler._stop.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        reconciler.run()
    finally:
        reconciler.stop()
        manager.close()


if __name__ == "__main__":
    main()
