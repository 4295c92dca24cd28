"""Redis-backed recurring job queue.

Features:
- Repeating task definitions and their next run times survive restarts.
- Several service instances may poll the same Redis; each tick is handed to
  exactly one of them at a time.
- A tick whose worker died is handed out again (at-least-once) once its lock
  expires, with the same scheduled time so downstream dedup recognises it.
- Same interface as the in-memory ``RecurringJobQueue``, which is used as the
  fallback when Redis is unreachable at startup.

Data structures in Redis (``{p}`` is ``QUEUE_SETTINGS['key_prefix']``):
 1. String     {p}:id               - INCR counter for job ids
 2. Hash       {p}:repeat           - repeat_key -> JSON task definition
 3. Sorted Set {p}:schedule         - scores=next_run_ms, members=repeat_key
 4. String     {p}:lock:{repeat_key} - token of the tick in flight (SET NX PX)
 5. Hash       {p}:active           - repeat_key -> "scheduled_for:token" of the tick in flight
 6. List       {p}:runs             - most recent run records (LPUSH + LTRIM)

On claim:
  - Redeliver ticks left in {p}:active whose lock has expired.
  - Read repeat keys whose score <= now, skipping keys this process still runs.
  - Take the per-task lock. If another tick holds it, either leave the task due
    (serialize) or move it to the next period (skip).
  - With the lock held, advance the score and record the tick in {p}:active in
    one script; it refuses if another instance claimed the period meanwhile.
While running:
  - The worker renews the lock (token-checked PEXPIRE) until the tick completes.
On complete:
  - One script clears the {p}:active entry, and bumps the run count only if the
    definition is unchanged and still scheduled (a cancel wins), dropping the
    task when its limit is reached. Then the run is recorded and the lock
    released if the token still matches.
"""
from __future__ import annotations

from typing import Any, Callable, Optional, Union
import threading
import uuid

import redis

from sidekick.config import QUEUE_SETTINGS
from sidekick.jobs.queue import (
    RecurringJobQueue,
    RepeatRegistration,
    RepeatingJob,
    RunRecord,
    Tick,
    _resolve_policy,
    _validate_schedule_args,
    make_repeat_key,
    next_run_after,
)
from sidekick.utils import get_logger
from sidekick.utils.observability import new_run_id
from sidekick.utils.time import now_ms

logger = get_logger(__name__)

# KEYS[1]=lock  ARGV[1]=token
RELEASE_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# KEYS[1]=lock  ARGV[1]=token ARGV[2]=ttl_ms
EXTEND_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""

# KEYS[1]=schedule KEYS[2]=active
# ARGV[1]=repeat_key ARGV[2]=expected score ARGV[3]=next score ARGV[4]=active entry
CLAIM_TICK_SCRIPT = """
local score = redis.call('zscore', KEYS[1], ARGV[1])
if not score or tonumber(score) ~= tonumber(ARGV[2]) then
    return 0
end
redis.call('zadd', KEYS[1], 'XX', ARGV[3], ARGV[1])
redis.call('hset', KEYS[2], ARGV[1], ARGV[4])
return 1
"""

# KEYS[1]=repeat KEYS[2]=schedule KEYS[3]=active
# ARGV[1]=repeat_key ARGV[2]=definition read before the update
# ARGV[3]=updated definition, '' when the limit is reached ARGV[4]=active entry
# Returns 0 untouched, 1 count stored, 2 task exhausted and removed.
FINISH_TICK_SCRIPT = """
if redis.call('hget', KEYS[3], ARGV[1]) == ARGV[4] then
    redis.call('hdel', KEYS[3], ARGV[1])
end
if redis.call('hget', KEYS[1], ARGV[1]) ~= ARGV[2] then
    return 0
end
if ARGV[3] == '' then
    redis.call('hdel', KEYS[1], ARGV[1])
    redis.call('zrem', KEYS[2], ARGV[1])
    return 2
end
if redis.call('zscore', KEYS[2], ARGV[1]) then
    redis.call('hset', KEYS[1], ARGV[1], ARGV[3])
    return 1
end
return 0
"""


def _active_entry(scheduled_for: int, token: str) -> str:
    return f"{scheduled_for}:{token}"


def _parse_active_entry(raw: str) -> tuple[int, str]:
    scheduled_for, _, token = raw.partition(":")
    return int(scheduled_for), token


class RedisRecurringQueue:
    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        *,
        key_prefix: Optional[str] = None,
        overlap_policy: Optional[str] = None,
        lock_ttl_ms: Optional[int] = None,
        history_size: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._redis_url: str = str(QUEUE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        self._prefix = str(key_prefix or QUEUE_SETTINGS.get("key_prefix", "sidekick:rewards-queue"))
        self._overlap_policy = _resolve_policy(overlap_policy)
        self._lock_ttl_ms = int(lock_ttl_ms or QUEUE_SETTINGS.get("lock_ttl_ms", 15 * 60 * 1000))  # type: ignore[arg-type]
        self._history_size = int(history_size or QUEUE_SETTINGS.get("run_history_size", 500))  # type: ignore[arg-type]
        self._health_check_timeout = float(QUEUE_SETTINGS.get("redis_health_check_timeout", 2.0))  # type: ignore[arg-type]
        self._clock = clock
        self._client: redis.Redis = client if client is not None else redis.from_url(
            self._redis_url,
            decode_responses=True,
            socket_connect_timeout=self._health_check_timeout,
        )
        self._shutdown = False
        # ticks this process claimed and has not completed yet: repeat_key -> lock token
        self._inflight: dict[str, str] = {}
        self._inflight_lock = threading.Lock()
        self._release_script = self._client.register_script(RELEASE_LOCK_SCRIPT)
        self._extend_script = self._client.register_script(EXTEND_LOCK_SCRIPT)
        self._claim_script = self._client.register_script(CLAIM_TICK_SCRIPT)
        self._finish_script = self._client.register_script(FINISH_TICK_SCRIPT)

    # ----------------------------- keys ----------------------------- #
    @property
    def _id_key(self) -> str:
        return f"{self._prefix}:id"

    @property
    def _repeat_key(self) -> str:
        return f"{self._prefix}:repeat"

    @property
    def _schedule_key(self) -> str:
        return f"{self._prefix}:schedule"

    @property
    def _runs_key(self) -> str:
        return f"{self._prefix}:runs"

    @property
    def _active_key(self) -> str:
        return f"{self._prefix}:active"

    def _lock_key(self, repeat_key: str) -> str:
        return f"{self._prefix}:lock:{repeat_key}"

    @property
    def backend(self) -> str:
        return "redis"

    @property
    def lock_ttl_ms(self) -> int:
        return self._lock_ttl_ms

    @property
    def client(self) -> redis.Redis:
        return self._client

    @property
    def overlap_policy(self) -> str:
        return self._overlap_policy

    # ----------------------------- internal helpers ----------------------------- #
    def _load(self, repeat_key: str) -> Optional[RepeatingJob]:
        raw = self._client.hget(self._repeat_key, repeat_key)
        if raw is None:
            return None
        return RepeatingJob.from_json(raw)

    def _release(self, repeat_key: str, token: str) -> None:
        self._release_script(keys=[self._lock_key(repeat_key)], args=[token])

    def _is_inflight(self, repeat_key: str) -> bool:
        with self._inflight_lock:
            return repeat_key in self._inflight

    def _track(self, repeat_key: str, token: str) -> None:
        with self._inflight_lock:
            self._inflight[repeat_key] = token

    def _untrack(self, repeat_key: str, token: str) -> None:
        with self._inflight_lock:
            if self._inflight.get(repeat_key) == token:
                del self._inflight[repeat_key]

    def _make_tick(self, job: RepeatingJob, scheduled_for: int, now: int, token: str) -> Tick:
        return Tick(
            run_id=new_run_id(job.job_id, scheduled_for),
            repeat_key=job.repeat_key,
            job_id=job.job_id,
            name=job.name,
            payload=dict(job.payload),
            scheduled_for=scheduled_for,
            claimed_at=now,
            lock_token=token,
        )

    def _redeliver_stalled(self, now: int, limit: Optional[int]) -> list[Tick]:
        """Hand out again the ticks whose worker stopped renewing their lock."""
        ticks: list[Tick] = []
        active = self._client.hgetall(self._active_key) or {}
        for key, raw in active.items():
            if limit is not None and len(ticks) >= limit:
                break
            if self._is_inflight(key):
                continue
            token = uuid.uuid4().hex
            if not self._client.set(self._lock_key(key), token, nx=True, px=self._lock_ttl_ms):
                continue  # still running somewhere
            current = self._client.hget(self._active_key, key)
            job = self._load(key)
            if current != raw or job is None:
                # completed or cancelled between reads
                if job is None and current == raw:
                    self._client.hdel(self._active_key, key)
                self._release(key, token)
                continue
            scheduled_for, _ = _parse_active_entry(raw)
            self._client.hset(self._active_key, key, _active_entry(scheduled_for, token))
            self._track(key, token)
            logger.warning("Redelivering stalled tick", repeat_key=key, scheduled_for=scheduled_for)
            ticks.append(self._make_tick(job, scheduled_for, now, token))
        return ticks

    # ----------------------------- public API ----------------------------- #
    def schedule(self, name: str, payload: dict[str, Any], every_ms: int, *, limit: Optional[int] = None) -> RepeatRegistration:
        _validate_schedule_args(name, every_ms, limit)
        if self._shutdown:
            raise RuntimeError("Queue shutdown")
        now = self._clock()
        job_id = str(self._client.incr(self._id_key))
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
        next_run = now + job.every_ms
        self._client.hset(self._repeat_key, repeat_key, job.to_json())
        self._client.zadd(self._schedule_key, {repeat_key: next_run})
        logger.info("Repeating job registered", repeat_key=repeat_key, every_ms=job.every_ms, limit=job.limit, backend="redis")
        return RepeatRegistration(job_id, repeat_key, name, job.every_ms, next_run)

    def list_repeating(self) -> list[RepeatingJob]:
        definitions = self._client.hgetall(self._repeat_key) or {}
        jobs: list[RepeatingJob] = []
        for key, raw in definitions.items():
            job = RepeatingJob.from_json(raw)
            score = self._client.zscore(self._schedule_key, key)
            job.next_run_at = int(score) if score is not None else None
            jobs.append(job)
        return sorted(jobs, key=lambda j: (j.next_run_at or 0, j.repeat_key))

    def get_repeating(self, repeat_key: str) -> Optional[RepeatingJob]:
        job = self._load(repeat_key)
        if job is not None:
            score = self._client.zscore(self._schedule_key, repeat_key)
            job.next_run_at = int(score) if score is not None else None
        return job

    def cancel_repeating(self, repeat_key: str) -> bool:
        """Remove a repeating task. A tick already in flight runs to completion but is not redelivered."""
        removed = int(self._client.hdel(self._repeat_key, repeat_key) or 0)
        self._client.zrem(self._schedule_key, repeat_key)
        self._client.hdel(self._active_key, repeat_key)
        if removed:
            logger.info("Repeating job removed", repeat_key=repeat_key, backend="redis")
        return removed > 0

    def claim_due(self, *, now: Optional[int] = None, max_ticks: Optional[int] = None) -> list[Tick]:
        if self._shutdown:
            return []
        now = self._clock() if now is None else now
        ticks = self._redeliver_stalled(now, max_ticks)
        due_keys = self._client.zrangebyscore(self._schedule_key, "-inf", now)
        for key in due_keys:
            if max_ticks is not None and len(ticks) >= max_ticks:
                break
            job = self._load(key)
            if job is None:
                # definition gone (cancelled between reads); drop the stray score
                self._client.zrem(self._schedule_key, key)
                continue
            token = uuid.uuid4().hex
            if self._is_inflight(key) or not self._client.set(self._lock_key(key), token, nx=True, px=self._lock_ttl_ms):
                if self._overlap_policy == "skip":
                    score = self._client.zscore(self._schedule_key, key)
                    if score is not None and int(score) <= now:
                        self._client.zadd(self._schedule_key, {key: next_run_after(int(score), job.every_ms, now)}, xx=True)
                        logger.warning("Tick skipped: previous run still in flight", repeat_key=key, scheduled_for=int(score))
                continue
            score = self._client.zscore(self._schedule_key, key)
            if score is None or int(score) > now:
                # claimed by another instance or cancelled meanwhile
                self._release(key, token)
                continue
            scheduled_for = int(score)
            claimed = self._claim_script(
                keys=[self._schedule_key, self._active_key],
                args=[key, scheduled_for, next_run_after(scheduled_for, job.every_ms, now), _active_entry(scheduled_for, token)],
            )
            if not int(claimed or 0):
                self._release(key, token)
                continue
            self._track(key, token)
            ticks.append(self._make_tick(job, scheduled_for, now, token))
        return ticks

    def extend_lock(self, tick: Tick) -> bool:
        """Push the lock deadline of a running tick out by another TTL. False once the lock is lost."""
        extended = self._extend_script(keys=[self._lock_key(tick.repeat_key)], args=[tick.lock_token, self._lock_ttl_ms])
        if not int(extended or 0):
            logger.warning("Tick lock lost while running", run_id=tick.run_id, repeat_key=tick.repeat_key)
            return False
        return True

    def complete(self, tick: Tick, *, status: str, result: Optional[dict[str, Any]] = None, failed_reason: Optional[str] = None) -> RunRecord:
        exhausted = False
        try:
            before = self._client.hget(self._repeat_key, tick.repeat_key)
            after = ""
            if before is not None:
                job = RepeatingJob.from_json(before)
                job.count += 1
                if job.limit is None or job.count < job.limit:
                    after = job.to_json()
            outcome = int(self._finish_script(
                keys=[self._repeat_key, self._schedule_key, self._active_key],
                args=[tick.repeat_key, before or "", after, _active_entry(tick.scheduled_for, tick.lock_token)],
            ) or 0)
            if outcome == 2:
                exhausted = True
                logger.info("Repeating job reached its limit", repeat_key=tick.repeat_key)
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
            self._client.lpush(self._runs_key, run.to_json())
            self._client.ltrim(self._runs_key, 0, self._history_size - 1)
            return run
        finally:
            self._untrack(tick.repeat_key, tick.lock_token)
            self._release(tick.repeat_key, tick.lock_token)

    def recent_runs(self, *, status: Optional[str] = None, limit: int = 100) -> list[RunRecord]:
        raw_runs = self._client.lrange(self._runs_key, 0, -1) or []
        runs = [RunRecord.from_json(raw) for raw in raw_runs]
        return [r for r in runs if status is None or r.status == status][:limit]

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        return next((r for r in self.recent_runs(limit=self._history_size) if r.run_id == run_id), None)

    def shutdown(self) -> None:
        self._shutdown = True

    def health_check(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return bool(self._client.ping())
        except (redis.RedisError, ConnectionError) as e:
            logger.warning("Redis health check failed", error=str(e))
            return False

    # ----------------------------- maintenance ----------------------------- #
    def purge(self) -> None:
        """Remove every repeating task and the run history."""
        self._client.delete(self._repeat_key, self._schedule_key, self._active_key, self._runs_key)
        logger.info("Redis queue purged")

    # ----------------------------- inspection ----------------------------- #
    def snapshot(self) -> dict:
        now = self._clock()
        try:
            return {
                "backend": self.backend,
                "repeating": int(self._client.hlen(self._repeat_key) or 0),
                "due": int(self._client.zcount(self._schedule_key, "-inf", now) or 0),
                "runs": int(self._client.llen(self._runs_key) or 0),
                "in_flight": int(self._client.hlen(self._active_key) or 0),
                "overlap_policy": self._overlap_policy,
                "shutdown": self._shutdown,
                "redis_active": True,
            }
        except redis.RedisError as e:
            logger.error("Error getting queue snapshot", error=str(e))
            return {"backend": self.backend, "redis_active": False, "shutdown": self._shutdown}


QueueBackend = Union[RecurringJobQueue, RedisRecurringQueue]


def create_queue() -> QueueBackend:
    """Create the Redis-backed queue, or the in-memory one when Redis is off or unreachable."""
    if QUEUE_SETTINGS.get("use_redis", False):
        try:
            queue = RedisRecurringQueue()
            if queue.health_check():
                logger.info("Using Redis-backed queue", url=str(QUEUE_SETTINGS.get("redis_url")))
                return queue
            logger.warning("REDIS CONNECTION FAILED: Redis server is not reachable. Using in-memory queue.")
        except redis.RedisError as e:
            logger.warning("Error initializing Redis queue, falling back to in-memory queue", error=str(e))
    logger.info("Using in-memory queue")
    return RecurringJobQueue()


__all__ = ["RedisRecurringQueue", "QueueBackend", "create_queue"]
