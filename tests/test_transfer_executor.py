"""Transfer executor tests: per-recipient outcomes, fail-fast connectivity and replay safety."""
import pytest

from sidekick.errors import ConnectivityError
from sidekick.jobs.reward_job import RewardJob
from sidekick.models.db import AttemptStatus
from sidekick.services.transfer_executor import TransferExecutor
from tests.fakes import (
    CHAIN_ID,
    CONTRACT,
    START_MS,
    USER_A,
    USER_B,
    USER_C,
    ExplodingTransactionLog,
    FakeSigner,
    FakeSignerRegistry,
)

TICK = START_MS + 60_000
SCHEDULE_KEY = f"rewards:{CHAIN_ID}:{CONTRACT}"


@pytest.fixture
def job():
    return RewardJob(CHAIN_ID, CONTRACT, [USER_A, USER_B, USER_C], ["10", "20", "30"])


def build_executor(signer, tx_log, ledger, **kwargs):
    return TransferExecutor(FakeSignerRegistry(signer), tx_log, ledger, receipt_timeout=1, receipt_poll=0.01, **kwargs)


def statuses(attempt):
    return [o.status for o in attempt.outcomes]


def test_all_transfers_confirm(executor, signer, job, tx_log, ledger):
    attempt = executor.execute(job, tick_ts=TICK, run_id="1:tick")
    assert attempt.status == "completed"
    assert statuses(attempt) == [AttemptStatus.CONFIRMED] * 3
    assert [(r, a) for _, r, a in signer.sent] == [(USER_A, 10), (USER_B, 20), (USER_C, 30)]

    logged = tx_log.list(schedule_key=SCHEDULE_KEY)
    assert len(logged) == 3
    assert {t.status for t in logged} == {"done"}
    assert {t.run_id for t in logged} == {"1:tick"}
    assert all(t.function_name == "transfer" and t.from_address == signer.address for t in logged)

    attempts = ledger.list_for_schedule(SCHEDULE_KEY)
    assert {a.status for a in attempts} == {"CONFIRMED"}


def test_revert_for_one_recipient_does_not_stop_others(tx_log, ledger, job):
    signer = FakeSigner(revert_on_chain=[USER_B])
    attempt = build_executor(signer, tx_log, ledger).execute(job, tick_ts=TICK)
    assert statuses(attempt) == [AttemptStatus.CONFIRMED, AttemptStatus.REVERTED, AttemptStatus.CONFIRMED]
    assert attempt.status == "partial"
    assert len(signer.sent) == 3
    reverted = attempt.outcomes[1]
    assert reverted.tx_hash is not None
    assert tx_log.get_by_hash(reverted.tx_hash).status == "failed"
    logged = {t.hash: t.status for t in tx_log.list(schedule_key=SCHEDULE_KEY)}
    assert logged[attempt.outcomes[0].tx_hash] == "done"
    assert logged[attempt.outcomes[2].tx_hash] == "done"
    assert logged[reverted.tx_hash] == "failed"


def test_revert_at_submission_has_no_hash(tx_log, ledger, job):
    signer = FakeSigner(revert_on_submit=[USER_A])
    attempt = build_executor(signer, tx_log, ledger).execute(job, tick_ts=TICK)
    first = attempt.outcomes[0]
    assert first.status == AttemptStatus.REVERTED
    assert first.tx_hash is None
    assert "exceeds balance" in first.error
    assert len(signer.sent) == 2


def test_submission_failure_is_recorded_per_recipient(tx_log, ledger, job):
    signer = FakeSigner(fail_submit=[USER_C])
    attempt = build_executor(signer, tx_log, ledger).execute(job, tick_ts=TICK)
    last = attempt.outcomes[2]
    assert last.status == AttemptStatus.SUBMISSION_FAILED
    assert last.error == "nonce too low"
    assert attempt.to_dict()["submissionFailed"] == 1


def test_no_confirmation_means_failed_tick(tx_log, ledger, job):
    signer = FakeSigner(revert_on_chain=[USER_A, USER_B, USER_C])
    attempt = build_executor(signer, tx_log, ledger).execute(job, tick_ts=TICK)
    assert attempt.status == "failed"


def test_unreachable_chain_fails_before_any_transfer(tx_log, ledger, job):
    signer = FakeSigner(unreachable=True)
    with pytest.raises(ConnectivityError):
        build_executor(signer, tx_log, ledger).execute(job, tick_ts=TICK)
    assert signer.sent == []
    assert ledger.list_for_schedule(SCHEDULE_KEY) == []
    assert tx_log.list() == []


def test_missing_signer_fails_the_tick(tx_log, ledger, job):
    executor = TransferExecutor(FakeSignerRegistry(None), tx_log, ledger)
    with pytest.raises(ConnectivityError):
        executor.execute(job, tick_ts=TICK)


def test_replayed_tick_does_not_resend(executor, signer, job):
    first = executor.execute(job, tick_ts=TICK)
    replay = executor.execute(job, tick_ts=TICK)
    assert len(signer.sent) == 3
    assert statuses(replay) == statuses(first)
    assert all(o.reused for o in replay.outcomes)
    assert [o.tx_hash for o in replay.outcomes] == [o.tx_hash for o in first.outcomes]


def test_next_tick_pays_again_in_full_mode(executor, signer, job):
    executor.execute(job, tick_ts=TICK)
    executor.execute(job, tick_ts=TICK + 60_000)
    assert len(signer.sent) == 6


def test_unconfirmed_transfer_is_settled_on_replay(tx_log, ledger, job):
    signer = FakeSigner(unconfirmed=[USER_A])
    executor = build_executor(signer, tx_log, ledger)
    first = executor.execute(job, tick_ts=TICK)
    assert first.outcomes[0].status == AttemptStatus.SUBMITTED
    assert first.to_dict()["unconfirmed"] == 1
    assert first.status == "partial"

    signer.unconfirmed.clear()
    replay = executor.execute(job, tick_ts=TICK)
    assert replay.outcomes[0].status == AttemptStatus.CONFIRMED
    assert replay.outcomes[0].tx_hash == first.outcomes[0].tx_hash
    assert len(signer.sent) == 3
    assert signer.receipt_checks.count(first.outcomes[0].tx_hash) == 2
    assert tx_log.get_by_hash(first.outcomes[0].tx_hash).status == "done"


def test_attempt_left_pending_is_closed_without_sending(executor, signer, ledger, job):
    ledger.begin(SCHEDULE_KEY, TICK, USER_A.lower(), "10")
    attempt = executor.execute(job, tick_ts=TICK)
    first = attempt.outcomes[0]
    assert first.status == AttemptStatus.SUBMISSION_FAILED
    assert first.error == "interrupted before submission"
    assert [r for _, r, _ in signer.sent] == [USER_B, USER_C]


def test_failed_only_mode_skips_recipients_already_paid(tx_log, ledger, job):
    signer = FakeSigner(revert_on_chain=[USER_B])
    executor = build_executor(signer, tx_log, ledger, retry_mode="failed_only")
    executor.execute(job, tick_ts=TICK)

    signer.revert_on_chain.clear()
    second = executor.execute(job, tick_ts=TICK + 60_000)
    assert second.skipped == [USER_A, USER_C]
    assert statuses(second) == [AttemptStatus.CONFIRMED]
    assert second.status == "completed"
    assert [r for _, r, _ in signer.sent][-1] == USER_B


def test_unknown_retry_mode_rejected(tx_log, ledger, signer):
    with pytest.raises(ValueError):
        build_executor(signer, tx_log, ledger, retry_mode="sometimes")


def test_transaction_log_failure_does_not_change_outcome(signer, ledger, job):
    broken_log = ExplodingTransactionLog()
    attempt = build_executor(signer, broken_log, ledger).execute(job, tick_ts=TICK)
    assert attempt.status == "completed"
    assert broken_log.calls == 6


def test_ledger_outage_blocks_sending(signer, tx_log, job):
    class DownLedger:
        def begin(self, *args):
            raise RuntimeError("database is locked")

    attempt = build_executor(signer, tx_log, DownLedger()).execute(job, tick_ts=TICK)
    assert statuses(attempt) == [AttemptStatus.SUBMISSION_FAILED] * 3
    assert signer.sent == []


def test_handle_tick_returns_run_result(executor, queue, clock, job):
    queue.schedule("reward-transfer", job.to_payload(), 60_000)
    clock.advance(60_000)
    [tick] = queue.claim_due()
    result = executor.handle_tick(tick)
    assert result["status"] == "completed"
    assert result["scheduleKey"] == SCHEDULE_KEY
    assert result["tickTimestamp"] == TICK
    assert [o["recipient"] for o in result["perRecipientOutcome"]] == [USER_A, USER_B, USER_C]
    assert result["perRecipientOutcome"][0]["status"] == "CONFIRMED"
