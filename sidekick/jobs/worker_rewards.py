"""Background worker firing due reward ticks."""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import threading
import time
from typing import Any, Callable, Optional

from sidekick.config import QUEUE_SETTINGS
from sidekick.jobs.queue import RunRecord, Tick
from sidekick.jobs.redis_queue import QueueBackend
from sidekick.utils import get_logger, log_performance

logger = get_logger(__name__)

TickHandler = Callable[[Tick], Optional[dict[str, Any]]]
RunListener = Callable[[RunRecord], None]

RUN_STATUSES = ("completed", "partial", "failed")


class RewardWorker:
    """Polls the queue and runs each due tick on a thread pool.

    Handlers are looked up by task name. A handler returns a result dict whose
    optional ``status`` key (completed | partial | failed) becomes the run
    status; an exception marks the run failed and does not stop the loop.
    """

    def __init__(
        self,
        queue: QueueBackend,
        handlers: dict[str, TickHandler],
        *,
        poll_interval: Optional[float] = None,
        max_workers: Optional[int] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.handlers = dict(handlers)
        self.poll_interval = float(poll_interval if poll_interval is not None else QUEUE_SETTINGS.get("poll_interval_seconds", 1.0))  # type: ignore[arg-type]
        self.max_workers = int(max_workers or QUEUE_SETTINGS.get("max_concurrent_ticks", 4))  # type: ignore[arg-type]
        if heartbeat_interval is None:
            # renew three times per lock lifetime
            lock_ttl_ms = getattr(queue, "lock_ttl_ms", QUEUE_SETTINGS.get("lock_ttl_ms", 15 * 60 * 1000))
            heartbeat_interval = int(lock_ttl_ms) / 3000.0  # type: ignore[arg-type]
        self.heartbeat_interval = float(heartbeat_interval)
        self._listeners: list[RunListener] = []
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._pool: ThreadPoolExecutor | None = None
        self._inflight: set[Future] = set()
        self._inflight_lock = threading.Lock()

    def add_listener(self, listener: RunListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reward-tick")
        self._thread = threading.Thread(target=self._loop, name="reward-worker", daemon=True)
        self._thread.start()
        logger.info("Reward worker started", poll_interval=self.poll_interval, max_workers=self.max_workers)

    def stop(self, *, wait: bool = True) -> None:
        self._stop_event.set()
        if self._thread is not None and wait:
            self._thread.join(timeout=self.poll_interval * 2 + 1)
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
        logger.info("Reward worker stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                free = self.max_workers - self._inflight_count()
                if free > 0:
                    for tick in self.queue.claim_due(max_ticks=free):
                        self._submit(tick)
            except Exception as e:  # pragma: no cover - redis outage etc.
                logger.error("Worker loop error", error=str(e), exc_info=True)
            self._stop_event.wait(self.poll_interval)

    def _inflight_count(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    def _submit(self, tick: Tick) -> None:
        if self._pool is None:  # pragma: no cover
            self.process(tick)
            return
        future = self._pool.submit(self.process, tick)
        with self._inflight_lock:
            self._inflight.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._inflight_lock:
            self._inflight.discard(future)

    def _heartbeat(self, tick: Tick, done: threading.Event) -> None:
        """Keep the tick's task lock alive while its handler runs."""
        while not done.wait(self.heartbeat_interval):
            try:
                if not self.queue.extend_lock(tick):
                    return
            except Exception as e:
                logger.error("Lock renewal failed", run_id=tick.run_id, error=str(e))

    def run_pending(self, *, now: Optional[int] = None) -> list[RunRecord]:
        """Claim and run every due tick synchronously (used by tests and manual triggers)."""
        return [self.process(tick) for tick in self.queue.claim_due(now=now)]

    def process(self, tick: Tick) -> RunRecord:
        started = time.perf_counter()
        logger.info("Processing tick", run_id=tick.run_id, repeat_key=tick.repeat_key, scheduled_for=tick.scheduled_for)
        handler = self.handlers.get(tick.name)
        status = "completed"
        result: Optional[dict[str, Any]] = None
        failed_reason: Optional[str] = None
        if handler is None:
            status = "failed"
            failed_reason = f"No handler registered for '{tick.name}'"
            logger.warning("Skipping tick with unknown task name", run_id=tick.run_id, name=tick.name)
        else:
            done = threading.Event()
            heartbeat = threading.Thread(target=self._heartbeat, args=(tick, done), name=f"reward-lock-{tick.job_id}", daemon=True)
            heartbeat.start()
            try:
                result = handler(tick) or {}
                status = str(result.get("status", "completed"))
                if status not in RUN_STATUSES:
                    status = "completed"
            except Exception as e:
                status = "failed"
                failed_reason = str(e)
                logger.error("Tick failed", run_id=tick.run_id, repeat_key=tick.repeat_key, error=str(e), exc_info=True)
            finally:
                done.set()
                heartbeat.join(timeout=self.heartbeat_interval + 1)
        run = self.queue.complete(tick, status=status, result=result, failed_reason=failed_reason)
        log_performance("reward_tick", (time.perf_counter() - started) * 1000, {"run_id": tick.run_id, "status": status})
        for listener in self._listeners:
            try:
                listener(run)
            except Exception as e:
                logger.error("Run listener failed", run_id=run.run_id, error=str(e), exc_info=True)
        return run


__all__ = ["RewardWorker", "TickHandler", "RunListener", "RUN_STATUSES"]
