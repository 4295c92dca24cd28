"""Worker tests: run status mapping, handler errors, listeners and the background loop."""
import time

import pytest

from sidekick.jobs.queue import RecurringJobQueue
from sidekick.jobs.redis_queue import RedisRecurringQueue
from sidekick.jobs.worker_rewards import RewardWorker
from tests.fakes import FakeClock, START_MS

EVERY = 60_000


@pytest.fixture
def due_queue(clock):
    queue = RecurringJobQueue(clock=clock)
    queue.schedule("reward-transfer", {"n": 1}, EVERY)
    clock.advance(EVERY)
    return queue


@pytest.mark.parametrize(
    "result,expected",
    [
        ({"status": "completed"}, "completed"),
        ({"status": "partial"}, "partial"),
        ({"status": "failed"}, "failed"),
        ({"status": "weird"}, "completed"),
        (None, "completed"),
    ],
)
def test_handler_result_sets_run_status(due_queue, result, expected):
    worker = RewardWorker(due_queue, {"reward-transfer": lambda tick: result})
    [run] = worker.run_pending()
    assert run.status == expected
    assert due_queue.recent_runs()[0].run_id == run.run_id


def test_handler_exception_marks_run_failed(due_queue):
    def explode(tick):
        raise RuntimeError("chain 421614 unreachable")

    worker = RewardWorker(due_queue, {"reward-transfer": explode})
    [run] = worker.run_pending()
    assert run.status == "failed"
    assert run.failed_reason == "chain 421614 unreachable"


def test_unknown_task_name_fails_run(due_queue):
    worker = RewardWorker(due_queue, {})
    [run] = worker.run_pending()
    assert run.status == "failed"
    assert "No handler registered" in run.failed_reason


def test_listeners_see_every_run_and_errors_are_contained(due_queue):
    seen = []

    def broken(run):
        raise ValueError("listener bug")

    worker = RewardWorker(due_queue, {"reward-transfer": lambda tick: {"status": "completed"}})
    worker.add_listener(broken)
    worker.add_listener(seen.append)
    [run] = worker.run_pending()
    assert seen == [run]


def test_handler_receives_tick_payload(due_queue):
    received = []
    worker = RewardWorker(due_queue, {"reward-transfer": lambda tick: received.append(tick) or {}})
    worker.run_pending()
    assert received[0].payload == {"n": 1}
    assert received[0].scheduled_for == START_MS + EVERY


def test_background_loop_processes_due_ticks():
    clock = FakeClock()
    queue = RecurringJobQueue(clock=clock)
    queue.schedule("reward-transfer", {}, EVERY)
    worker = RewardWorker(queue, {"reward-transfer": lambda tick: {"status": "completed"}}, poll_interval=0.01, max_workers=2)
    clock.advance(EVERY)

    worker.start()
    try:
        assert worker.running
        deadline = time.time() + 5
        while not queue.recent_runs() and time.time() < deadline:
            time.sleep(0.01)
    finally:
        worker.stop()
    assert not worker.running
    assert [r.status for r in queue.recent_runs()] == ["completed"]


def test_heartbeat_keeps_lock_while_slow_handler_runs(fake_redis, clock):
    queue = RedisRecurringQueue(fake_redis, key_prefix="test:rewards-queue", lock_ttl_ms=200, clock=clock)
    queue.schedule("reward-transfer", {}, EVERY)
    clock.advance(EVERY)
    rival = RedisRecurringQueue(fake_redis, key_prefix="test:rewards-queue", lock_ttl_ms=200, clock=clock)
    rival_claims = []

    def slow(tick):
        time.sleep(0.5)
        rival_claims.append(rival.claim_due())
        return {"status": "completed"}

    worker = RewardWorker(queue, {"reward-transfer": slow}, heartbeat_interval=0.05)
    [run] = worker.run_pending()
    assert rival_claims == [[]]
    assert run.status == "completed"
    assert rival.claim_due() == []


def test_heartbeat_interval_follows_lock_ttl(fake_redis, clock):
    queue = RedisRecurringQueue(fake_redis, key_prefix="test:rewards-queue", lock_ttl_ms=90_000, clock=clock)
    assert RewardWorker(queue, {}).heartbeat_interval == 30.0
