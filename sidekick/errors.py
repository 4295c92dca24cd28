"""Domain error taxonomy.

Each error carries the HTTP status the API layer answers with; the FastAPI
exception handler in ``sidekick.main`` renders them as ``{"error": message}``.
"""
from __future__ import annotations


class SidekickError(Exception):
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SidekickError):
    """Malformed request (mismatched arrays, non-positive interval, bad address)."""

    status_code = 400


class NotFoundError(SidekickError):
    status_code = 404


class ScheduleConflictError(SidekickError):
    """A schedule already exists for the key and replacement is disabled."""

    status_code = 409


class ConnectivityError(SidekickError):
    """Chain client or signer unavailable; fails the whole tick or request."""

    status_code = 500


class TransactionRevertedError(SidekickError):
    """On-chain execution failed for a single recipient."""

    def __init__(self, message: str, *, tx_hash: str | None = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class QueueInconsistencyError(SidekickError):
    """Queue registration and Job Store diverged and could not be compensated."""

    status_code = 500


__all__ = [
    "SidekickError",
    "ValidationError",
    "NotFoundError",
    "ScheduleConflictError",
    "ConnectivityError",
    "TransactionRevertedError",
    "QueueInconsistencyError",
]
