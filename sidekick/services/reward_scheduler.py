"""Scheduler API: create, inspect and cancel recurring reward schedules.

Keeps the recurring queue and the Job Store consistent:

- creation validates everything first, then registers the repeating task, then
  writes the record; a failed write cancels the fresh task again
- cancellation removes the repeating task by its stored repeat key, then the record
- ``reconcile()`` repairs whatever still diverges (tasks without a record and
  records whose task is gone)
"""
from __future__ import annotations

import math
from typing import Any, Callable, Optional

from web3 import Web3

from sidekick.config import SCHEDULER_SETTINGS
from sidekick.errors import (
    NotFoundError,
    QueueInconsistencyError,
    ScheduleConflictError,
    ValidationError,
)
from sidekick.jobs.queue import RunRecord
from sidekick.jobs.redis_queue import QueueBackend
from sidekick.jobs.reward_job import RewardJob, ScheduleKey
from sidekick.services.job_store import JobStore, ScheduleRecord, minutes_to_ms
from sidekick.utils import get_logger, log_business_event
from sidekick.utils.time import MAX_EPOCH_MS, now_ms

logger = get_logger(__name__)


def _validate_request(
    key: ScheduleKey,
    recipients: list[str],
    amounts: list[Any],
    interval_minutes: float,
    repeat_limit: Optional[int],
    now: int,
) -> list[str]:
    """Raise ValidationError on any malformed input; returns amounts as decimal strings."""
    if not key.chain_id:
        raise ValidationError("chainId is required")
    if not Web3.is_address(key.contract_address):
        raise ValidationError(f"Invalid contract address: {key.contract_address}")
    if not recipients or not amounts:
        raise ValidationError("Users and amounts must not be empty")
    if len(recipients) != len(amounts):
        raise ValidationError("Users and amounts arrays must have the same length")
    max_recipients = int(SCHEDULER_SETTINGS.get("max_recipients", 500))
    if len(recipients) > max_recipients:
        raise ValidationError(f"At most {max_recipients} users per schedule")
    try:
        interval = float(interval_minutes)
    except (TypeError, ValueError):
        raise ValidationError("timeframe must be a number of minutes")
    if not math.isfinite(interval) or interval <= 0 or minutes_to_ms(interval) <= 0:
        raise ValidationError("timeframe must be greater than 0")
    if now + minutes_to_ms(interval) > MAX_EPOCH_MS:
        raise ValidationError("timeframe is too large")
    if repeat_limit is not None and int(repeat_limit) <= 0:
        raise ValidationError("repeat_count must be greater than 0")
    for recipient in recipients:
        if not isinstance(recipient, str) or not Web3.is_address(recipient):
            raise ValidationError(f"Invalid recipient address: {recipient}")
    normalized: list[str] = []
    for amount in amounts:
        text = str(amount).strip()
        if isinstance(amount, bool) or not (text.isascii() and text.isdigit()):
            raise ValidationError(f"Invalid amount: {amount!r} (expected a non-negative integer)")
        if int(text) >= 2 ** 256:
            raise ValidationError(f"Amount out of uint256 range: {amount}")
        normalized.append(str(int(text)))
    return normalized


class RewardScheduler:
    def __init__(self, queue: QueueBackend, store: JobStore, *, clock: Callable[[], int] = now_ms):
        self.queue = queue
        self.store = store
        self._clock = clock
        self._task_name = str(SCHEDULER_SETTINGS["task_name"])

    @property
    def task_name(self) -> str:
        return self._task_name

    def create_schedule(
        self,
        chain_id: str,
        contract_address: str,
        recipients: list[str],
        amounts: list[Any],
        interval_minutes: float,
        *,
        repeat_limit: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> ScheduleRecord:
        key = ScheduleKey(chain_id, contract_address)
        normalized_amounts = _validate_request(
            key, list(recipients or []), list(amounts or []), interval_minutes, repeat_limit, self._clock()
        )
        interval_ms = minutes_to_ms(float(interval_minutes))

        existing = self.store.get(key)
        if existing is not None and SCHEDULER_SETTINGS.get("on_existing_schedule", "replace") == "reject":
            raise ScheduleConflictError(f"A schedule already exists for {key.render()}")

        job = RewardJob(key.chain_id, key.contract_address, list(recipients), normalized_amounts)
        registration = self.queue.schedule(self._task_name, job.to_payload(), interval_ms, limit=repeat_limit)
        record = ScheduleRecord(
            key=key,
            job_id=registration.job_id,
            repeat_job_key=registration.repeat_key,
            recipients=list(recipients),
            amounts=normalized_amounts,
            interval_ms=interval_ms,
            created_at=self._clock(),
            repeat_limit=int(repeat_limit) if repeat_limit is not None else None,
            next_run_at=registration.next_run_at,
        )
        try:
            self.store.put(record)
        except Exception as e:
            logger.error("Job store write failed; cancelling fresh repeating job", schedule_key=key.render(), error=str(e))
            try:
                self.queue.cancel_repeating(registration.repeat_key)
            except Exception as cancel_error:
                raise QueueInconsistencyError(
                    f"Schedule {key.render()} is registered in the queue ({registration.repeat_key}) but could not be stored"
                ) from cancel_error
            raise

        if existing is not None and existing.repeat_job_key != registration.repeat_key:
            # the new record is already live; an old task left behind is cleaned by reconcile()
            try:
                self.queue.cancel_repeating(existing.repeat_job_key)
            except Exception as e:
                logger.error("Failed to cancel replaced repeating job", repeat_key=existing.repeat_job_key, error=str(e))
            logger.info("Schedule replaced", schedule_key=key.render(), previous_job_id=existing.job_id)

        log_business_event(
            "schedule_created",
            {
                "schedule_key": key.render(),
                "job_id": record.job_id,
                "repeat_key": record.repeat_job_key,
                "recipients": len(record.recipients),
                "interval_ms": interval_ms,
                "repeat_limit": record.repeat_limit,
            },
            request_id=request_id,
        )
        return record

    def cancel_schedule(self, chain_id: str, contract_address: str, *, request_id: Optional[str] = None) -> ScheduleRecord:
        key = ScheduleKey(chain_id, contract_address)
        record = self.store.get(key)
        if record is None:
            raise NotFoundError("No active jobs found")
        self.queue.cancel_repeating(record.repeat_job_key)
        self.store.delete(key)
        log_business_event(
            "schedule_cancelled",
            {"schedule_key": key.render(), "job_id": record.job_id, "repeat_key": record.repeat_job_key},
            request_id=request_id,
        )
        return record

    def get_schedule(self, chain_id: str, contract_address: str) -> Optional[ScheduleRecord]:
        record = self.store.get(ScheduleKey(chain_id, contract_address))
        if record is not None:
            task = self.queue.get_repeating(record.repeat_job_key)
            record.next_run_at = task.next_run_at if task is not None else None
        return record

    def list_schedules(self) -> list[ScheduleRecord]:
        records = self.store.list()
        next_runs = {job.repeat_key: job.next_run_at for job in self.queue.list_repeating()}
        for record in records:
            record.next_run_at = next_runs.get(record.repeat_job_key)
        return records

    def reconcile(self) -> dict[str, list[str]]:
        """Cancel reward tasks without a record and delete records without a task."""
        tasks = {job.repeat_key: job for job in self.queue.list_repeating() if job.name == self._task_name}
        records = self.store.list()
        referenced = {r.repeat_job_key for r in records}

        dangling: list[str] = []
        for record in records:
            if record.repeat_job_key not in tasks:
                self.store.delete(record.key)
                dangling.append(record.key.render())
        orphaned: list[str] = []
        for repeat_key in tasks:
            if repeat_key not in referenced:
                self.queue.cancel_repeating(repeat_key)
                orphaned.append(repeat_key)

        if dangling or orphaned:
            logger.warning("Queue and job store reconciled", orphaned_tasks=orphaned, dangling_records=dangling)
        else:
            logger.info("Queue and job store consistent", schedules=len(records))
        return {"orphanedTasksCancelled": orphaned, "danglingRecordsDeleted": dangling}

    def clean(self) -> dict[str, int]:
        """Remove every repeating task, the run history and all schedule records."""
        repeating = len(self.queue.list_repeating())
        self.queue.purge()
        records = self.store.clear()
        log_business_event("queue_cleaned", {"repeating_removed": repeating, "records_removed": records})
        return {"repeatingRemoved": repeating, "recordsRemoved": records}

    def handle_run_finished(self, run: RunRecord) -> None:
        """Worker completion hook: a bounded schedule that used up its ticks is retired."""
        if not run.exhausted or run.name != self._task_name:
            return
        try:
            key = RewardJob.from_payload(run.payload).schedule_key
        except (KeyError, TypeError) as e:
            logger.warning("Exhausted run without schedule payload", run_id=run.run_id, error=str(e))
            return
        record = self.store.get(key)
        if record is not None and record.repeat_job_key == run.repeat_key:
            self.store.delete(key)
            log_business_event("schedule_completed", {"schedule_key": key.render(), "job_id": run.job_id, "repeat_limit": record.repeat_limit})


__all__ = ["RewardScheduler"]
