from .enums import AttemptStatus, TransactionStatus
from .transactions import Transaction
from .transfer_attempts import TransferAttempt

__all__ = [
    "AttemptStatus",
    "TransactionStatus",
    "Transaction",
    "TransferAttempt",
]
