"""In-memory recurring job queue (single-process fallback).

Holds repeating task definitions and fires them on a fixed period:
- ``schedule(name, payload, every_ms)`` registers a repeating task and returns
  its job id and repeat key directly (no lookup by name + period afterwards).
- ``claim_due()`` hands out the ticks whose run time has passed and advances
  each task to its next period; ``complete()`` closes a tick.
- A task has at most one tick in flight. What happens when the next period
  arrives while a tick still runs is decided by the overlap policy:

    serialize  the due tick waits for the running one, then fires once
               (several missed periods collapse into a single catch-up tick)
    skip       the due tick is dropped and the task moves to its next period

Cadence: run times stay aligned to ``anchor + k * every_ms``; after downtime
only one catch-up tick fires, followed by the regular grid.

Nothing here survives a restart; ``RedisRecurringQueue`` is the durable variant
with the same interface.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional
import json
import threading
import uuid

from sidekick.config import QUEUE_SETTINGS, OVERLAP_POLICIES
from sidekick.utils import get_logger
from sidekick.utils.observability import new_run_id
from sidekick.utils.time import now_ms

logger = get_logger(__name__)


@dataclass(slots=True)
class RepeatRegistration:
    job_id: str
    repeat_key: str
    name: str
    every_ms: int
    next_run_at: int


@dataclass(slots=True)
class RepeatingJob:
    repeat_key: str
    job_id: str
    name: str
    every_ms: int
    payload: dict[str, Any]
    created_at: int
    limit: Optional[int] = None
    count: int = 0
    next_run_at: Optional[int] = None

    def to_json(self) -> str:
        data = asdict(self)
        data.pop("next_run_at")  # lives in the schedule index, not the definition
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "RepeatingJob":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        data.pop("next_run_at", None)
        return cls(**data)


@dataclass(slots=True)
class Tick:
    run_id: str
    repeat_key: str
    job_id: str
    name: str
    payload: dict[str, Any]
    scheduled_for: int
    claimed_at: int
    lock_token: str


@dataclass(slots=True)
class RunRecord:
    run_id: str
    repeat_key: str
    job_id: str
    name: str
    payload: dict[str, Any]
    scheduled_for: int
    processed_on: int
    finished_on: int
    status: str  # completed | partial | failed
    result: Optional[dict[str, Any]] = None
    failed_reason: Optional[str] = None
    exhausted: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "RunRecord":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return cls(**json.loads(raw))


def make_repeat_key(name: str, job_id: str, every_ms: int) -> str:
    return f"{name}:{job_id}:{every_ms}"


def next_run_after(anchor_ms: int, every_ms: int, now: int) -> int:
    """First point of the ``anchor + k * every_ms`` grid strictly after ``now``."""
    if every_ms <= 0:
        raise ValueError("every_ms must be positive")
    if anchor_ms > now:
        return anchor_ms
    periods = (now - anchor_ms) // every_ms + 1
    return anchor_ms + periods * every_ms


def _validate_schedule_args(name: str, every_ms: int, limit: Optional[int]) -> None:
    if not name:
        raise ValueError("Task name is required")
    if int(every_ms) <= 0:
        raise ValueError("every_ms must be positive")
    if limit is not None and int(limit) <= 0:
        raise ValueError("limit must be positive when given")


def _resolve_policy(overlap_policy: Optional[str]) -> str:
    policy = str(overlap_policy or QUEUE_SETTINGS.get("overlap_policy", "serialize"))
    if policy not in OVERLAP_POLICIES:
        raise ValueError(f"Unknown overlap policy '{policy}'")
    return policy


class RecurringJobQueue:
    def __init__(
        self,
        *,
        overlap_policy: Optional[str] = None,
        history_size: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._overlap_policy = _resolve_policy(overlap_policy)
        self._history_size = int(history_size or QUEUE_SETTINGS.get("run_history_size", 500))  # type: ignore[arg-type]
        self._clock = clock
        self._lock = threading.RLock()
        self._jobs: dict[str, RepeatingJob] = {}
        self._next_run: dict[str, int] = {}
        self._running: dict[str, str] = {}  # repeat_key -> lock token
        self._runs: deque[RunRecord] = deque(maxlen=self._history_size)
        self._seq_counter = 0
        self._shutdown = False

    @property
    def backend(self) -> str:
        return "memory"

    @property
    def overlap_policy(self) -> str:
        return self._overlap_policy

    # ----------------------------- internal helpers ----------------------------- #
    def _next_seq(self) -> int:
        self._seq_counter += 1
        return self._seq_counter

    # ----------------------------- public API ----------------------------- #
    def schedule(self, name: str, payload: dict[str, Any], every_ms: int, *, limit: Optional[int] = None) -> RepeatRegistration:
        _validate_schedule_args(name, every_ms, limit)
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Queue shutdown")
            now = self._clock()
            job_id = str(self._next_seq())
            repeat_key = make_repeat_key(name, job_id, int(every_ms))
            job = RepeatingJob(
                repeat_key=repeat_key,
                job_id=job_id,
                name=name,
                every_ms=int(every_ms),
                payload=dict(payload),
                created_at=now,
                limit=int(limit) if limit is not None else None,
            )
            self._jobs[repeat_key] = job
            self._next_run[repeat_key] = now + job.every_ms
            logger.info("Repeating job registered", repeat_key=repeat_key, every_ms=job.every_ms, limit=job.limit)
            return RepeatRegistration(job_id, repeat_key, name, job.every_ms, self._next_run[repeat_key])

    def list_repeating(self) -> list[RepeatingJob]:
        with self._lock:
            out = []
            for key, job in self._jobs.items():
                job.next_run_at = self._next_run.get(key)
                out.append(job)
            return sorted(out, key=lambda j: (j.next_run_at or 0, j.repeat_key))

    def get_repeating(self, repeat_key: str) -> Optional[RepeatingJob]:
        with self._lock:
            job = self._jobs.get(repeat_key)
            if job is not None:
                job.next_run_at = self._next_run.get(repeat_key)
            return job

    def cancel_repeating(self, repeat_key: str) -> bool:
        """Remove a repeating task. A tick already in flight runs to completion."""
        with self._lock:
            removed = self._jobs.pop(repeat_key, None)
            self._next_run.pop(repeat_key, None)
            if removed is not None:
                logger.info("Repeating job removed", repeat_key=repeat_key)
            return removed is not None

    def claim_due(self, *, now: Optional[int] = None, max_ticks: Optional[int] = None) -> list[Tick]:
        with self._lock:
            if self._shutdown:
                return []
            now = self._clock() if now is None else now
            due = sorted((ts, key) for key, ts in self._next_run.items() if ts <= now)
            ticks: list[Tick] = []
            for scheduled_for, key in due:
                if max_ticks is not None and len(ticks) >= max_ticks:
                    break
                job = self._jobs[key]
                if key in self._running:
                    if self._overlap_policy == "skip":
                        self._next_run[key] = next_run_after(scheduled_for, job.every_ms, now)
                        logger.warning("Tick skipped: previous run still in flight", repeat_key=key, scheduled_for=scheduled_for)
                    continue
                self._next_run[key] = next_run_after(scheduled_for, job.every_ms, now)
                token = uuid.uuid4().hex
                self._running[key] = token
                ticks.append(Tick(
                    run_id=new_run_id(job.job_id, scheduled_for),
                    repeat_key=key,
                    job_id=job.job_id,
                    name=job.name,
                    payload=dict(job.payload),
                    scheduled_for=scheduled_for,
                    claimed_at=now,
                    lock_token=token,
                ))
            return ticks

    def extend_lock(self, tick: Tick) -> bool:
        """Locks here never expire; report whether the tick still owns its task."""
        with self._lock:
            return self._running.get(tick.repeat_key) == tick.lock_token

    def complete(self, tick: Tick, *, status: str, result: Optional[dict[str, Any]] = None, failed_reason: Optional[str] = None) -> RunRecord:
        with self._lock:
            exhausted = False
            job = self._jobs.get(tick.repeat_key)
            if job is not None:
                job.count += 1
                if job.limit is not None and job.count >= job.limit:
                    self._jobs.pop(tick.repeat_key, None)
                    self._next_run.pop(tick.repeat_key, None)
                    exhausted = True
                    logger.info("Repeating job reached its limit", repeat_key=tick.repeat_key, limit=job.limit)
            run = RunRecord(
                run_id=tick.run_id,
                repeat_key=tick.repeat_key,
                job_id=tick.job_id,
                name=tick.name,
                payload=tick.payload,
                scheduled_for=tick.scheduled_for,
                processed_on=tick.claimed_at,
                finished_on=self._clock(),
                status=status,
                result=result,
                failed_reason=failed_reason,
                exhausted=exhausted,
            )
            self._runs.appendleft(run)
            if self._running.get(tick.repeat_key) == tick.lock_token:
                self._running.pop(tick.repeat_key, None)
            return run

    def recent_runs(self, *, status: Optional[str] = None, limit: int = 100) -> list[RunRecord]:
        with self._lock:
            runs = [r for r in self._runs if status is None or r.status == status]
            return runs[:limit]

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return next((r for r in self._runs if r.run_id == run_id), None)

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True

    def health_check(self) -> bool:
        return not self._shutdown

    # ----------------------------- maintenance ----------------------------- #
    def purge(self) -> None:
        """Remove every repeating task and the run history.

        Ticks currently in flight finish normally.
        """
        with self._lock:
            self._jobs.clear()
            self._next_run.clear()
            self._runs.clear()

    # ----------------------------- inspection ----------------------------- #
    def snapshot(self) -> dict:
        with self._lock:
            now = self._clock()
            return {
                "backend": self.backend,
                "repeating": len(self._jobs),
                "due": sum(1 for ts in self._next_run.values() if ts <= now),
                "running": len(self._running),
                "runs": len(self._runs),
                "overlap_policy": self._overlap_policy,
                "shutdown": self._shutdown,
            }


__all__ = [
    "RecurringJobQueue",
    "RepeatRegistration",
    "RepeatingJob",
    "Tick",
    "RunRecord",
    "make_repeat_key",
    "next_run_after",
]
