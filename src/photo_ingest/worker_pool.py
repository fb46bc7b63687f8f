"""Polling worker pool that claims queue tasks and runs the media pipeline."""

from __future__ import annotations

import signal
import statistics
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from utils.logging import get_logger
from photo_ingest.catalog import Catalog
from photo_ingest.config import WorkerConfig
from photo_ingest.errors import describe_error, is_retryable
from photo_ingest.models import MotionPairing, PoolStats, QueueTask, Stage
from photo_ingest.pipeline import MediaPipeline
from photo_ingest.task_queue import QueueStore

LOGGER = get_logger(__name__, extra={"component": "worker_pool"})

_RECENT_SAMPLES = 50


@dataclass
class WorkerState:
    """Counters for one worker; mutated only under the pool lock."""

    worker_id: int
    state: str = "idle"
    last_active: float | None = None
    processed: int = 0
    failed: int = 0
    current_task_id: int | None = None
    priority_band: tuple[int, int] | None = None
    recent: deque = field(default_factory=lambda: deque(maxlen=_RECENT_SAMPLES))

    def average_duration(self) -> float | None:
        if not self.recent:
            return None
        return sum(duration for duration, _ok in self.recent) / len(self.recent)

    def error_rate(self) -> float:
        if not self.recent:
            return 0.0
        return sum(1 for _duration, ok in self.recent if not ok) / len(self.recent)

    def to_dict(self) -> dict[str, Any]:
        average = self.average_duration()
        return {
            "worker_id": self.worker_id,
            "state": self.state,
            "last_active": self.last_active,
            "processed": self.processed,
            "failed": self.failed,
            "current_task_id": self.current_task_id,
            "priority_band": list(self.priority_band) if self.priority_band else None,
            "average_duration_seconds": round(average, 3) if average is not None else None,
            "error_rate": round(self.error_rate(), 3),
        }


class WorkerPool:
    """N polling threads sharing one queue, one pipeline, and one catalog.

    Each worker ticks on ``interval_seconds``; start times are staggered by
    ``interval / count`` so the workers do not poll in lockstep. Exceptions
    from the pipeline or the catalog are recorded on the task and never stop
    a worker loop.
    """

    def __init__(
        self,
        queue: QueueStore,
        pipeline: MediaPipeline,
        catalog: Catalog,
        config: WorkerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._queue = queue
        self._pipeline = pipeline
        self._catalog = catalog
        self._config = config or WorkerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._workers = {index: WorkerState(worker_id=index) for index in range(max(1, self._config.count))}
        self._completions: deque[float] = deque()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self.running:
            raise RuntimeError("worker pool already running")

        self._stop_event.clear()
        recovered = self._queue.reset_in_flight()
        count = len(self._workers)
        interval = max(0.0, self._config.interval_seconds)

        LOGGER.info(
            "pool_start",
            extra={
                "workers": count,
                "interval_seconds": interval,
                "load_balancing": self._config.enable_load_balancing,
                "recovered_tasks": recovered,
            },
        )

        self._threads = []
        for worker_id in self._workers:
            offset = interval * worker_id / count
            thread = threading.Thread(
                target=self._worker_loop,
                args=(worker_id, offset),
                name=f"photo-worker-{worker_id}",
                daemon=True,
            )
            self._threads.append(thread)
        self._threads.append(
            threading.Thread(target=self._maintenance_loop, name="photo-pool-maintenance", daemon=True)
        )
        for thread in self._threads:
            thread.start()

    def stop(self, wait: bool = True, timeout: float | None = None) -> None:
        """Stop scheduling new ticks; with ``wait`` block until in-flight tasks finish."""

        self._stop_event.set()
        if wait:
            for thread in self._threads:
                if thread is not threading.current_thread():
                    thread.join(timeout)
        with self._lock:
            for worker in self._workers.values():
                if worker.current_task_id is None:
                    worker.state = "stopped"
        LOGGER.info("pool_stopped", extra={"waited": wait})

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to :meth:`stop` without waiting inside the handler."""

        def _handle(signum: int, _frame: Any) -> None:
            LOGGER.info("pool_signal_received", extra={"signal": signal.Signals(signum).name})
            self._stop_event.set()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

    def run_until_signal(self) -> None:
        """Start the pool, block until SIGINT/SIGTERM, then drain and return."""

        self.install_signal_handlers()
        self.start()
        while not self._stop_event.wait(0.5):
            pass
        self.stop(wait=True)
        self.report_stats()

    # -- polling -----------------------------------------------------------

    def _worker_loop(self, worker_id: int, offset: float) -> None:
        if offset > 0 and self._stop_event.wait(offset):
            return
        interval = max(0.0, self._config.interval_seconds)
        while not self._stop_event.is_set():
            try:
                self.tick(worker_id)
            except Exception as exc:  # pragma: no cover - database outages
                LOGGER.error("worker_poll_error", extra={"worker_id": worker_id, "error": describe_error(exc)})
                self._set_state(worker_id, "idle")
            if self._stop_event.wait(interval):
                break
        self._set_state(worker_id, "stopped")

    def tick(self, worker_id: int = 0) -> bool:
        """Claim and process at most one task; return whether one was claimed."""

        with self._lock:
            worker = self._workers[worker_id]
            worker.state = "claiming"
            band = worker.priority_band

        task = self._queue.claim_next(priority_band=band)
        if task is None:
            self._set_state(worker_id, "idle")
            return False

        with self._lock:
            worker.state = "executing"
            worker.current_task_id = task.id
            worker.last_active = self._clock()

        self._execute(worker_id, task)
        return True

    def drain(self, worker_id: int = 0, limit: int | None = None) -> int:
        """Synchronously process pending tasks until none are left (or ``limit``)."""

        processed = 0
        while limit is None or processed < limit:
            if not self.tick(worker_id):
                break
            processed += 1
        return processed

    def _execute(self, worker_id: int, task: QueueTask) -> None:
        started = time.monotonic()

        def on_stage(stage: Stage) -> None:
            self._queue.mark_stage(task.id, stage.value)

        LOGGER.info(
            "worker_task_started",
            extra={
                "worker_id": worker_id,
                "task_id": task.id,
                "kind": task.payload.kind.value,
                "storage_key": task.payload.storage_key,
                "attempt": task.attempts + 1,
            },
        )

        try:
            outcome = self._pipeline.run(task.payload, on_stage=on_stage)
            if isinstance(outcome, MotionPairing):
                self._apply_pairing(task, outcome)
            else:
                self._catalog.insert(outcome)
            self._queue.complete(task.id)
        except Exception as exc:
            duration = time.monotonic() - started
            retryable = is_retryable(exc)
            try:
                status = self._queue.fail_or_retry(task.id, exc, retryable=retryable)
            finally:
                self._record(worker_id, duration, ok=False)
            LOGGER.error(
                "worker_task_failed",
                extra={
                    "worker_id": worker_id,
                    "task_id": task.id,
                    "storage_key": task.payload.storage_key,
                    "retryable": retryable,
                    "status": status.value if status else None,
                    "duration_seconds": round(duration, 3),
                    "error": describe_error(exc),
                },
            )
            return

        duration = time.monotonic() - started
        LOGGER.info(
            "worker_task_completed",
            extra={"worker_id": worker_id, "task_id": task.id, "duration_seconds": round(duration, 3)},
        )
        self._record(worker_id, duration, ok=True)

    def _apply_pairing(self, task: QueueTask, pairing: MotionPairing) -> bool:
        """Write live-photo fields onto the still's catalog row.

        The still's own photo task may still be running when the video is
        claimed. Its row is polled for ``pairing_wait_attempts`` ticks; when it
        never appears the video task still completes, because the photo task
        records the companion video itself when it reaches motion pairing.
        """

        fields = pairing.catalog_fields()
        attempts = max(1, self._config.pairing_wait_attempts)
        for attempt in range(1, attempts + 1):
            if self._catalog.update_live_photo_fields(pairing.photo_id, fields):
                return True
            if attempt < attempts:
                self._stop_event.wait(max(0.0, self._config.pairing_wait_interval_seconds))

        LOGGER.info(
            "worker_pairing_deferred",
            extra={
                "task_id": task.id,
                "photo_id": pairing.photo_id,
                "still_key": pairing.still_key,
                "video_key": pairing.video_key,
            },
        )
        return False

    def _record(self, worker_id: int, duration: float, ok: bool) -> None:
        now = self._clock()
        with self._lock:
            worker = self._workers[worker_id]
            worker.recent.append((duration, ok))
            worker.last_active = now
            worker.current_task_id = None
            worker.state = "idle"
            if ok:
                worker.processed += 1
                self._completions.append(now)
            else:
                worker.failed += 1
            self._trim_completions(now)

    def _set_state(self, worker_id: int, state: str) -> None:
        with self._lock:
            self._workers[worker_id].state = state

    def _trim_completions(self, now: float) -> None:
        cutoff = now - self._config.throughput_window_seconds
        while self._completions and self._completions[0] < cutoff:
            self._completions.popleft()

    # -- balancing and stats -----------------------------------------------

    def rebalance(self) -> dict[int, tuple[int, int] | None]:
        """Move slow or error-prone workers off the urgent priority band.

        A worker whose recent average duration exceeds ``slow_worker_ratio``
        times the pool median, or whose recent error rate exceeds
        ``error_rate_threshold``, prefers ``relaxed_priority_band``; every
        other worker takes any task. Workers are never paused.
        """

        cfg = self._config
        with self._lock:
            if not cfg.enable_load_balancing:
                return {worker_id: worker.priority_band for worker_id, worker in self._workers.items()}

            averages = [avg for avg in (w.average_duration() for w in self._workers.values()) if avg is not None]
            median = statistics.median(averages) if averages else None

            assignments: dict[int, tuple[int, int] | None] = {}
            for worker_id, worker in self._workers.items():
                average = worker.average_duration()
                slow = median is not None and median > 0 and average is not None and average > cfg.slow_worker_ratio * median
                erratic = worker.error_rate() > cfg.error_rate_threshold
                worker.priority_band = tuple(cfg.relaxed_priority_band) if (slow or erratic) else None
                assignments[worker_id] = worker.priority_band

        LOGGER.info(
            "pool_rebalanced",
            extra={
                "median_duration_seconds": round(median, 3) if median is not None else None,
                "relaxed_workers": [worker_id for worker_id, band in assignments.items() if band is not None],
            },
        )
        return assignments

    def get_pool_stats(self) -> PoolStats:
        now = self._clock()
        window = self._config.throughput_window_seconds
        with self._lock:
            self._trim_completions(now)
            completions = len(self._completions)
            workers = [worker.to_dict() for worker in self._workers.values()]

        return PoolStats(
            status_counts=self._queue.status_counts(),
            average_attempts=self._queue.average_attempts(),
            workers=workers,
            throughput_per_minute=round(completions / (window / 60.0), 3) if window > 0 else 0.0,
            window_seconds=window,
        )

    def report_stats(self) -> PoolStats:
        stats = self.get_pool_stats()
        LOGGER.info(
            "pool_stats",
            extra={
                "status_counts": stats.status_counts,
                "average_attempts": round(stats.average_attempts, 3),
                "throughput_per_minute": stats.throughput_per_minute,
                "workers": [(w["worker_id"], w["state"], w["processed"], w["failed"]) for w in stats.workers],
            },
        )
        return stats

    def _maintenance_loop(self) -> None:
        cfg = self._config
        schedule: list[tuple[float, Callable[[], object], str]] = []
        if cfg.stats_report_interval_seconds > 0:
            schedule.append((cfg.stats_report_interval_seconds, self.report_stats, "stats"))
        if cfg.enable_load_balancing and cfg.rebalance_interval_seconds > 0:
            schedule.append((cfg.rebalance_interval_seconds, self.rebalance, "rebalance"))
        if not schedule:
            return

        start = time.monotonic()
        next_due = {name: start + every for every, _job, name in schedule}
        while True:
            wait = max(0.0, min(next_due.values()) - time.monotonic())
            if self._stop_event.wait(wait):
                return
            now = time.monotonic()
            for every, job, name in schedule:
                if now < next_due[name]:
                    continue
                next_due[name] = now + every
                try:
                    job()
                except Exception as exc:  # pragma: no cover - database outages
                    LOGGER.error("pool_maintenance_error", extra={"job": name, "error": describe_error(exc)})


__all__ = ["WorkerPool", "WorkerState"]
