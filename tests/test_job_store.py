"""Job Store tests: Redis hash layout and the in-memory fallback."""
import pytest

from sidekick.jobs.reward_job import ScheduleKey
from sidekick.services.job_store import (
    InMemoryJobStore,
    RewardJobStore,
    ScheduleRecord,
    minutes_to_ms,
    ms_to_minutes,
)
from tests.fakes import CHAIN_ID, CONTRACT, START_MS, USER_A, USER_B


def make_record(contract=CONTRACT, *, interval_ms=60_000, repeat_limit=None, job_id="1"):
    key = ScheduleKey(CHAIN_ID, contract)
    return ScheduleRecord(
        key=key,
        job_id=job_id,
        repeat_job_key=f"reward-transfer:{job_id}:{interval_ms}",
        recipients=[USER_A, USER_B],
        amounts=["100", "200"],
        interval_ms=interval_ms,
        created_at=START_MS,
        repeat_limit=repeat_limit,
    )


@pytest.fixture
def redis_store(fake_redis):
    return RewardJobStore(fake_redis, prefix="rewards")


def test_minute_conversions():
    assert minutes_to_ms(1) == 60_000
    assert minutes_to_ms(0.5) == 30_000
    assert ms_to_minutes(60_000) == 1
    assert isinstance(ms_to_minutes(60_000), int)
    assert ms_to_minutes(90_000) == 1.5


def test_schedule_key_lowercases_contract():
    key = ScheduleKey(CHAIN_ID, CONTRACT.upper().replace("0X", "0x"))
    assert key.render("rewards") == f"rewards:{CHAIN_ID}:{CONTRACT}"
    assert ScheduleKey.parse(key.render("rewards"), "rewards") == key


def test_redis_store_writes_documented_fields(redis_store, fake_redis):
    redis_store.put(make_record())
    fields = fake_redis.hgetall(f"rewards:{CHAIN_ID}:{CONTRACT}")
    assert fields["jobId"] == "1"
    assert fields["repeatJobKey"] == "reward-transfer:1:60000"
    assert fields["timeframe"] == "1"
    assert fields["createdAt"] == str(START_MS)
    assert "repeatLimit" not in fields


def test_redis_store_round_trip(redis_store):
    record = make_record(interval_ms=90_000, repeat_limit=4)
    redis_store.put(record)
    loaded = redis_store.get(record.key)
    assert loaded == record
    assert loaded.amounts == ["100", "200"]


def test_overwrite_drops_stale_repeat_limit(redis_store, fake_redis):
    redis_store.put(make_record(repeat_limit=4))
    redis_store.put(make_record(job_id="2"))
    fields = fake_redis.hgetall(f"rewards:{CHAIN_ID}:{CONTRACT}")
    assert fields["jobId"] == "2"
    assert "repeatLimit" not in fields
    assert redis_store.get(ScheduleKey(CHAIN_ID, CONTRACT)).repeat_limit is None


def test_list_skips_foreign_keys(redis_store, fake_redis):
    other = "0x" + "d4" * 20
    redis_store.put(make_record())
    redis_store.put(make_record(other, job_id="2"))
    fake_redis.hset("rewards:garbage", "x", "1")
    assert [r.key.contract_address for r in redis_store.list()] == sorted([CONTRACT, other])


def test_delete_and_clear(redis_store):
    record = make_record()
    redis_store.put(record)
    redis_store.put(make_record("0x" + "d4" * 20, job_id="2"))
    assert redis_store.delete(record.key) is True
    assert redis_store.delete(record.key) is False
    assert redis_store.get(record.key) is None
    assert redis_store.clear() == 1
    assert redis_store.list() == []


def test_in_memory_store_behaves_like_redis_store():
    store = InMemoryJobStore()
    record = make_record()
    assert store.get(record.key) is None
    store.put(record)
    assert store.get(ScheduleKey(CHAIN_ID, CONTRACT.upper().replace("0X", "0x"))) == record
    assert store.list() == [record]
    assert store.delete(record.key) is True
    assert store.clear() == 0
    assert store.backend == "memory"


def test_to_read_renders_iso_times():
    record = make_record(repeat_limit=2)
    record.next_run_at = START_MS + 60_000
    read = record.to_read()
    assert read["scheduleKey"] == f"rewards:{CHAIN_ID}:{CONTRACT}"
    assert read["timeframe"] == 1
    assert read["repeatLimit"] == 2
    assert read["createdAt"].startswith("2023-11-14T22:13:20")
    assert read["nextRun"].startswith("2023-11-14T22:14:20")
