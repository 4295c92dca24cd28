"""Central Enum definitions for transfer and transaction states.

Shared by the DB models, schemas and the executor so state names stay
consistent across layers.
"""
from __future__ import annotations
import enum


class AttemptStatus(str, enum.Enum):
    """Lifecycle of one recipient transfer within one tick.

    PENDING -> SUBMITTED -> CONFIRMED | REVERTED, or PENDING -> SUBMISSION_FAILED.
    """
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"
    SUBMISSION_FAILED = "SUBMISSION_FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.CONFIRMED, AttemptStatus.REVERTED, AttemptStatus.SUBMISSION_FAILED)


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


__all__ = [
    "AttemptStatus",
    "TransactionStatus",
]
