"""Transfer Executor: the per-tick handler of the ``reward-transfer`` task.

For every (recipient, amount) pair of the schedule, independently:

    PENDING -> SUBMITTED -> CONFIRMED | REVERTED
    PENDING -> SUBMISSION_FAILED

A revert or submission failure for one recipient never stops the others, and
nothing is retried within a tick. An unreachable chain or missing signer fails
the whole tick before anything is sent (``ConnectivityError``); the next tick
tries again on its own.

Replays of a tick (same schedule and fire time, e.g. after a worker crash)
go through the attempt ledger: finished attempts are reused, an attempt that
already has a transaction hash waits for that receipt instead of resending, and
an attempt that never reached the chain is closed as SUBMISSION_FAILED.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any, Optional

from sidekick.config import EXECUTOR_SETTINGS, RETRY_MODES
from sidekick.errors import ConnectivityError, TransactionRevertedError
from sidekick.integrations.evm import ERC20_ABI, ChainSigner, SignerRegistry
from sidekick.jobs.queue import Tick
from sidekick.jobs.reward_job import RewardJob
from sidekick.models.db import AttemptStatus, TransactionStatus
from sidekick.services.attempt_ledger import AttemptLedger
from sidekick.services.transaction_log import TransactionLogStore
from sidekick.utils import get_logger, log_business_event, log_performance

logger = get_logger(__name__)


@dataclass(slots=True)
class RecipientOutcome:
    recipient: str
    amount: str
    status: AttemptStatus
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    reused: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient": self.recipient,
            "amount": self.amount,
            "txHash": self.tx_hash,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass(slots=True)
class ExecutionAttempt:
    schedule_key: str
    tick_ts: int
    outcomes: list[RecipientOutcome] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def count(self, status: AttemptStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def status(self) -> str:
        """completed: every sent transfer confirmed; failed: none did; partial otherwise."""
        confirmed = self.count(AttemptStatus.CONFIRMED)
        if confirmed == len(self.outcomes):
            return "completed"
        if confirmed == 0:
            return "failed"
        return "partial"

    def to_dict(self) -> dict[str, Any]:
        return {
            "scheduleKey": self.schedule_key,
            "tickTimestamp": self.tick_ts,
            "status": self.status,
            "confirmed": self.count(AttemptStatus.CONFIRMED),
            "reverted": self.count(AttemptStatus.REVERTED),
            "submissionFailed": self.count(AttemptStatus.SUBMISSION_FAILED),
            "unconfirmed": self.count(AttemptStatus.SUBMITTED),
            "skipped": list(self.skipped),
            "perRecipientOutcome": [o.to_dict() for o in self.outcomes],
        }


class TransferExecutor:
    def __init__(
        self,
        signers: SignerRegistry,
        tx_log: TransactionLogStore,
        ledger: AttemptLedger,
        *,
        retry_mode: Optional[str] = None,
        receipt_timeout: Optional[float] = None,
        receipt_poll: Optional[float] = None,
    ):
        self.signers = signers
        self.tx_log = tx_log
        self.ledger = ledger
        self.retry_mode = str(retry_mode or EXECUTOR_SETTINGS.get("retry_mode", "full"))
        if self.retry_mode not in RETRY_MODES:
            raise ValueError(f"Unknown retry mode '{self.retry_mode}'")
        self.receipt_timeout = float(receipt_timeout if receipt_timeout is not None else EXECUTOR_SETTINGS.get("receipt_timeout_seconds", 120))  # type: ignore[arg-type]
        self.receipt_poll = float(receipt_poll if receipt_poll is not None else EXECUTOR_SETTINGS.get("receipt_poll_seconds", 2))  # type: ignore[arg-type]

    def handle_tick(self, tick: Tick) -> dict[str, Any]:
        job = RewardJob.from_payload(tick.payload)
        attempt = self.execute(job, tick_ts=tick.scheduled_for, run_id=tick.run_id)
        return attempt.to_dict()

    def execute(self, job: RewardJob, *, tick_ts: int, run_id: Optional[str] = None) -> ExecutionAttempt:
        started = time.perf_counter()
        schedule_key = job.schedule_key.render()
        try:
            signer = self.signers.get_signer(job.chain_id)
            signer.block_number()
        except ConnectivityError as e:
            logger.error("Tick aborted: chain unavailable", schedule_key=schedule_key, run_id=run_id, error=e.message)
            raise

        attempt = ExecutionAttempt(schedule_key=schedule_key, tick_ts=tick_ts)
        for recipient, amount in job.pairs():
            ledger_recipient = recipient.lower()
            if self.retry_mode == "failed_only" and self._already_paid(schedule_key, ledger_recipient):
                attempt.skipped.append(recipient)
                continue
            attempt.outcomes.append(
                self._transfer_one(signer, job, schedule_key, tick_ts, recipient, ledger_recipient, amount, run_id)
            )

        logger.info(
            "Tick executed",
            schedule_key=schedule_key,
            run_id=run_id,
            status=attempt.status,
            confirmed=attempt.count(AttemptStatus.CONFIRMED),
            reverted=attempt.count(AttemptStatus.REVERTED),
            submission_failed=attempt.count(AttemptStatus.SUBMISSION_FAILED),
            skipped=len(attempt.skipped),
        )
        log_business_event("reward_tick_executed", {"schedule_key": schedule_key, "run_id": run_id, "status": attempt.status})
        log_performance("execute_reward_tick", (time.perf_counter() - started) * 1000, {"recipients": len(attempt.outcomes)})
        return attempt

    # ----------------------------- per recipient ----------------------------- #
    def _transfer_one(
        self,
        signer: ChainSigner,
        job: RewardJob,
        schedule_key: str,
        tick_ts: int,
        recipient: str,
        ledger_recipient: str,
        amount: str,
        run_id: Optional[str],
    ) -> RecipientOutcome:
        try:
            record, created = self.ledger.begin(schedule_key, tick_ts, ledger_recipient, amount)
        except Exception as e:
            # without a ledger row a replay could not tell whether we sent; do not send
            logger.error("Attempt ledger unavailable", schedule_key=schedule_key, recipient=recipient, error=str(e), exc_info=True)
            return RecipientOutcome(recipient, amount, AttemptStatus.SUBMISSION_FAILED, error=f"attempt ledger unavailable: {e}")

        if not created:
            status = AttemptStatus(record.status)
            if status.is_terminal:
                return RecipientOutcome(recipient, amount, status, tx_hash=record.tx_hash, error=record.error, reused=True)
            if status == AttemptStatus.SUBMITTED and record.tx_hash:
                logger.info("Resuming submitted transfer", schedule_key=schedule_key, tx_hash=record.tx_hash)
                return self._settle(signer, record.id, recipient, amount, record.tx_hash)
            self._mark(record.id, AttemptStatus.SUBMISSION_FAILED, error="interrupted before submission")
            return RecipientOutcome(recipient, amount, AttemptStatus.SUBMISSION_FAILED, error="interrupted before submission", reused=True)

        args = {"to": recipient, "amount": amount}
        try:
            tx_hash, data = signer.submit_transfer(job.contract_address, recipient, int(amount))
        except TransactionRevertedError as e:
            self._mark(record.id, AttemptStatus.REVERTED, tx_hash=e.tx_hash, error=e.message)
            self._record(job, signer, None, None, args, schedule_key, run_id, TransactionStatus.FAILED, e.message)
            logger.warning("Transfer reverted", schedule_key=schedule_key, recipient=recipient, error=e.message)
            return RecipientOutcome(recipient, amount, AttemptStatus.REVERTED, tx_hash=e.tx_hash, error=e.message)
        except Exception as e:
            self._mark(record.id, AttemptStatus.SUBMISSION_FAILED, error=str(e))
            self._record(job, signer, None, None, args, schedule_key, run_id, TransactionStatus.FAILED, str(e))
            logger.error("Transfer submission failed", schedule_key=schedule_key, recipient=recipient, error=str(e))
            return RecipientOutcome(recipient, amount, AttemptStatus.SUBMISSION_FAILED, error=str(e))

        self._mark(record.id, AttemptStatus.SUBMITTED, tx_hash=tx_hash)
        self._record(job, signer, tx_hash, data, args, schedule_key, run_id, TransactionStatus.PENDING, None)
        return self._settle(signer, record.id, recipient, amount, tx_hash)

    def _settle(self, signer: ChainSigner, attempt_id: int, recipient: str, amount: str, tx_hash: str) -> RecipientOutcome:
        try:
            self._await_receipt(signer, tx_hash)
        except TransactionRevertedError as e:
            self._mark(attempt_id, AttemptStatus.REVERTED, error=e.message)
            self._update_log(tx_hash, TransactionStatus.FAILED, e.message)
            logger.warning("Transfer reverted on chain", tx_hash=tx_hash, recipient=recipient)
            return RecipientOutcome(recipient, amount, AttemptStatus.REVERTED, tx_hash=tx_hash, error=e.message)
        except TimeoutError as e:
            # left SUBMITTED; a replay of this tick picks the receipt up
            return RecipientOutcome(recipient, amount, AttemptStatus.SUBMITTED, tx_hash=tx_hash, error=str(e))
        self._mark(attempt_id, AttemptStatus.CONFIRMED)
        self._update_log(tx_hash, TransactionStatus.DONE, None)
        return RecipientOutcome(recipient, amount, AttemptStatus.CONFIRMED, tx_hash=tx_hash)

    def _await_receipt(self, signer: ChainSigner, tx_hash: str) -> None:
        try:
            ok = signer.wait_for_receipt(tx_hash, self.receipt_timeout, self.receipt_poll)
        except Exception as e:
            logger.warning("Receipt lookup failed", tx_hash=tx_hash, error=str(e))
            raise TimeoutError(f"receipt unavailable: {e}") from e
        if ok is None:
            raise TimeoutError(f"no receipt after {self.receipt_timeout:g}s")
        if not ok:
            raise TransactionRevertedError("transaction reverted", tx_hash=tx_hash)

    # ----------------------------- bookkeeping ----------------------------- #
    def _already_paid(self, schedule_key: str, recipient: str) -> bool:
        try:
            return self.ledger.has_confirmed(schedule_key, recipient)
        except Exception as e:
            logger.error("Attempt ledger lookup failed", schedule_key=schedule_key, error=str(e))
            return False

    def _mark(self, attempt_id: int, status: AttemptStatus, *, tx_hash: Optional[str] = None, error: Optional[str] = None) -> None:
        try:
            self.ledger.mark(attempt_id, status, tx_hash=tx_hash, error=error)
        except Exception as e:
            logger.error("Failed to update transfer attempt", attempt_id=attempt_id, status=status.value, error=str(e), exc_info=True)

    def _record(
        self,
        job: RewardJob,
        signer: ChainSigner,
        tx_hash: Optional[str],
        data: Optional[str],
        args: dict[str, Any],
        schedule_key: str,
        run_id: Optional[str],
        status: TransactionStatus,
        error: Optional[str],
    ) -> None:
        try:
            self.tx_log.create_transaction(
                job.chain_id,
                job.contract_address,
                ERC20_ABI,
                data,
                tx_hash,
                False,
                args,
                "transfer",
                status=status,
                from_address=signer.address,
                schedule_key=schedule_key,
                run_id=run_id,
                error=error,
            )
        except Exception as e:
            logger.error("Transaction log write failed", schedule_key=schedule_key, tx_hash=tx_hash, error=str(e))

    def _update_log(self, tx_hash: str, status: TransactionStatus, error: Optional[str]) -> None:
        try:
            self.tx_log.update_status(tx_hash, status, error=error)
        except Exception as e:
            logger.error("Transaction log update failed", tx_hash=tx_hash, error=str(e))


__all__ = ["RecipientOutcome", "ExecutionAttempt", "TransferExecutor"]
