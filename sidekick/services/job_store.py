"""Job Store: durable (chain, contract) -> schedule record mapping.

Each schedule is one Redis hash at ``rewards:{chainId}:{contractAddress}``:

    jobId         queue job id of the repeating task
    repeatJobKey  repeat key used to cancel the task
    users         JSON list of recipient addresses
    amounts       JSON list of decimal amount strings
    timeframe     interval in minutes
    createdAt     epoch milliseconds
    repeatLimit   optional tick limit of a bounded schedule
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import threading
from typing import Any, Optional, Union

import redis

from sidekick.config import SCHEDULER_SETTINGS
from sidekick.jobs.reward_job import ScheduleKey
from sidekick.utils import get_logger
from sidekick.utils.time import ms_to_iso

logger = get_logger(__name__)

MS_PER_MINUTE = 60_000


def minutes_to_ms(minutes: float) -> int:
    return int(round(float(minutes) * MS_PER_MINUTE))


def ms_to_minutes(interval_ms: int) -> Union[int, float]:
    minutes = interval_ms / MS_PER_MINUTE
    return int(minutes) if float(minutes).is_integer() else minutes


@dataclass(slots=True)
class ScheduleRecord:
    key: ScheduleKey
    job_id: str
    repeat_job_key: str
    recipients: list[str]
    amounts: list[str]
    interval_ms: int
    created_at: int
    repeat_limit: Optional[int] = None
    next_run_at: Optional[int] = field(default=None, compare=False)

    def to_fields(self) -> dict[str, str]:
        fields = {
            "jobId": self.job_id,
            "repeatJobKey": self.repeat_job_key,
            "users": json.dumps(self.recipients),
            "amounts": json.dumps(self.amounts),
            "timeframe": str(ms_to_minutes(self.interval_ms)),
            "createdAt": str(self.created_at),
        }
        if self.repeat_limit is not None:
            fields["repeatLimit"] = str(self.repeat_limit)
        return fields

    @classmethod
    def from_fields(cls, key: ScheduleKey, fields: dict[str, Any]) -> "ScheduleRecord":
        repeat_limit = fields.get("repeatLimit")
        return cls(
            key=key,
            job_id=str(fields["jobId"]),
            repeat_job_key=str(fields["repeatJobKey"]),
            recipients=list(json.loads(fields.get("users") or "[]")),
            amounts=[str(a) for a in json.loads(fields.get("amounts") or "[]")],
            interval_ms=minutes_to_ms(float(fields["timeframe"])),
            created_at=int(fields.get("createdAt") or 0),
            repeat_limit=int(repeat_limit) if repeat_limit not in (None, "") else None,
        )

    def to_read(self) -> dict[str, Any]:
        return {
            "scheduleKey": self.key.render(),
            "chainId": self.key.chain_id,
            "contractAddress": self.key.contract_address,
            "jobId": self.job_id,
            "repeatJobKey": self.repeat_job_key,
            "users": list(self.recipients),
            "amounts": list(self.amounts),
            "timeframe": ms_to_minutes(self.interval_ms),
            "createdAt": ms_to_iso(self.created_at) if self.created_at else None,
            "repeatLimit": self.repeat_limit,
            "nextRun": ms_to_iso(self.next_run_at) if self.next_run_at else None,
        }


class RewardJobStore:
    """Redis-hash implementation. Redis errors propagate to the caller."""

    def __init__(self, client: redis.Redis, *, prefix: Optional[str] = None):
        self._client = client
        self._prefix = prefix or str(SCHEDULER_SETTINGS["store_key_prefix"])

    @property
    def backend(self) -> str:
        return "redis"

    def _hash_key(self, key: ScheduleKey) -> str:
        return key.render(self._prefix)

    def put(self, record: ScheduleRecord) -> None:
        hash_key = self._hash_key(record.key)
        self._client.hset(hash_key, mapping=record.to_fields())
        if record.repeat_limit is None:
            self._client.hdel(hash_key, "repeatLimit")
        logger.debug("Schedule record stored", schedule_key=hash_key, job_id=record.job_id)

    def get(self, key: ScheduleKey) -> Optional[ScheduleRecord]:
        fields = self._client.hgetall(self._hash_key(key))
        if not fields:
            return None
        return ScheduleRecord.from_fields(key, fields)

    def delete(self, key: ScheduleKey) -> bool:
        return bool(self._client.delete(self._hash_key(key)))

    def list(self) -> list[ScheduleRecord]:
        records: list[ScheduleRecord] = []
        for hash_key in self._client.scan_iter(match=f"{self._prefix}:*"):
            try:
                key = ScheduleKey.parse(hash_key, self._prefix)
            except ValueError:
                logger.warning("Ignoring foreign key under store prefix", key=hash_key)
                continue
            record = self.get(key)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.key.render())

    def clear(self) -> int:
        keys = list(self._client.scan_iter(match=f"{self._prefix}:*"))
        if keys:
            self._client.delete(*keys)
        return len(keys)


class InMemoryJobStore:
    """Process-local store used when Redis is unavailable. Not durable."""

    def __init__(self) -> None:
        self._records: dict[ScheduleKey, ScheduleRecord] = {}
        self._lock = threading.Lock()

    @property
    def backend(self) -> str:
        return "memory"

    def put(self, record: ScheduleRecord) -> None:
        with self._lock:
            self._records[record.key] = record

    def get(self, key: ScheduleKey) -> Optional[ScheduleRecord]:
        with self._lock:
            return self._records.get(key)

    def delete(self, key: ScheduleKey) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def list(self) -> list[ScheduleRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.key.render())

    def clear(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records.clear()
            return count


JobStore = Union[RewardJobStore, InMemoryJobStore]

__all__ = [
    "ScheduleRecord",
    "RewardJobStore",
    "InMemoryJobStore",
    "JobStore",
    "minutes_to_ms",
    "ms_to_minutes",
]
