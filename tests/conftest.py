import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Test environment must be in place before any sidekick module reads its config
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///./test_sidekick.db"
os.environ["QUEUE_USE_REDIS"] = "false"
os.environ["LOG_FILE"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from sidekick import config  # noqa: E402
from sidekick.database import Base, SessionLocal, engine, init_db  # noqa: E402
from sidekick.jobs.queue import RecurringJobQueue  # noqa: E402
from sidekick.jobs.worker_rewards import RewardWorker  # noqa: E402
from sidekick.main import app  # noqa: E402
from sidekick.models.db import Transaction, TransferAttempt  # noqa: E402
from sidekick.services.attempt_ledger import AttemptLedger  # noqa: E402
from sidekick.services.job_store import InMemoryJobStore  # noqa: E402
from sidekick.services.reward_scheduler import RewardScheduler  # noqa: E402
from sidekick.services.transaction_log import TransactionLogStore  # noqa: E402
from sidekick.services.transfer_executor import TransferExecutor  # noqa: E402
from tests.fakes import FakeClock, FakeRedis, FakeSigner, FakeSignerRegistry, TEST_SECRET  # noqa: E402

# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    init_db(engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_sidekick.db")
    except OSError:
        pass


@pytest.fixture(autouse=True)
def _isolate_test_state(monkeypatch):
    """Fresh tables and default settings for every test."""
    monkeypatch.setattr(config, "SECRET_KEY", TEST_SECRET)
    monkeypatch.setitem(config.SCHEDULER_SETTINGS, "on_existing_schedule", "replace")
    monkeypatch.setitem(config.EXECUTOR_SETTINGS, "retry_mode", "full")
    monkeypatch.setitem(config.QUEUE_SETTINGS, "overlap_policy", "serialize")
    session = SessionLocal()
    try:
        session.query(TransferAttempt).delete()
        session.query(Transaction).delete()
        session.commit()
    finally:
        session.close()
    yield


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def queue(clock):
    return RecurringJobQueue(clock=clock)


@pytest.fixture()
def job_store():
    return InMemoryJobStore()


@pytest.fixture()
def signer():
    return FakeSigner()


@pytest.fixture()
def tx_log():
    return TransactionLogStore(SessionLocal)


@pytest.fixture()
def ledger():
    return AttemptLedger(SessionLocal)


@pytest.fixture()
def executor(signer, tx_log, ledger):
    return TransferExecutor(FakeSignerRegistry(signer), tx_log, ledger, receipt_timeout=1, receipt_poll=0.01)


@pytest.fixture()
def scheduler(queue, job_store, clock):
    return RewardScheduler(queue, job_store, clock=clock)


@pytest.fixture()
def worker(queue, scheduler, executor):
    w = RewardWorker(queue, {scheduler.task_name: executor.handle_tick}, poll_interval=0.01, max_workers=2)
    w.add_listener(scheduler.handle_run_finished)
    return w


@pytest.fixture()
def client(queue, job_store, scheduler, executor, worker, tx_log, ledger, signer):
    """TestClient over app.state wired with in-memory components (lifespan is bypassed)."""
    app.state.queue = queue
    app.state.job_store = job_store
    app.state.scheduler = scheduler
    app.state.executor = executor
    app.state.worker = worker
    app.state.transaction_log = tx_log
    app.state.attempt_ledger = ledger
    app.state.signers = FakeSignerRegistry(signer)
    yield TestClient(app)
    for name in ("queue", "job_store", "scheduler", "executor", "worker", "transaction_log", "attempt_ledger", "signers"):
        if hasattr(app.state, name):
            delattr(app.state, name)


@pytest.fixture()
def auth_header():
    return {"x-secret-key": TEST_SECRET}
