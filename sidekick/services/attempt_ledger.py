"""Attempt ledger: per (schedule, tick, recipient) transfer state.

The executor consults it before sending so a redelivered tick never pays a
recipient twice, and in ``failed_only`` mode to skip recipients already paid.
"""
from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sidekick.database import SessionLocal
from sidekick.models.db import AttemptStatus, TransferAttempt
from sidekick.models.schemas import AttemptRead
from sidekick.utils import get_logger

logger = get_logger(__name__)


class AttemptLedger:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def begin(self, schedule_key: str, tick_ts: int, recipient: str, amount: str) -> tuple[AttemptRead, bool]:
        """Get or create the attempt row; returns (attempt, created)."""
        session = self._session_factory()
        try:
            existing = session.scalars(
                select(TransferAttempt).where(
                    TransferAttempt.schedule_key == schedule_key,
                    TransferAttempt.tick_ts == tick_ts,
                    TransferAttempt.recipient == recipient,
                )
            ).first()
            if existing is not None:
                return AttemptRead.model_validate(existing), False
            row = TransferAttempt(
                schedule_key=schedule_key,
                tick_ts=tick_ts,
                recipient=recipient,
                amount=str(amount),
                status=AttemptStatus.PENDING,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # another worker inserted the same attempt first
                session.rollback()
                row = session.scalars(
                    select(TransferAttempt).where(
                        TransferAttempt.schedule_key == schedule_key,
                        TransferAttempt.tick_ts == tick_ts,
                        TransferAttempt.recipient == recipient,
                    )
                ).one()
                return AttemptRead.model_validate(row), False
            session.refresh(row)
            return AttemptRead.model_validate(row), True
        finally:
            session.close()

    def mark(self, attempt_id: int, status: AttemptStatus, *, tx_hash: Optional[str] = None, error: Optional[str] = None) -> AttemptRead:
        session = self._session_factory()
        try:
            row = session.get(TransferAttempt, attempt_id)
            if row is None:
                raise LookupError(f"Transfer attempt {attempt_id} not found")
            row.status = status
            if tx_hash is not None:
                row.tx_hash = tx_hash
            if error is not None:
                row.error = error
            session.commit()
            session.refresh(row)
            return AttemptRead.model_validate(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def has_confirmed(self, schedule_key: str, recipient: str) -> bool:
        session = self._session_factory()
        try:
            return session.scalars(
                select(TransferAttempt.id).where(
                    TransferAttempt.schedule_key == schedule_key,
                    TransferAttempt.recipient == recipient,
                    TransferAttempt.status == AttemptStatus.CONFIRMED,
                ).limit(1)
            ).first() is not None
        finally:
            session.close()

    def list_for_schedule(self, schedule_key: str, *, limit: int = 100) -> list[AttemptRead]:
        session = self._session_factory()
        try:
            rows = session.scalars(
                select(TransferAttempt)
                .where(TransferAttempt.schedule_key == schedule_key)
                .order_by(TransferAttempt.tick_ts.desc(), TransferAttempt.id.asc())
                .limit(limit)
            ).all()
            return [AttemptRead.model_validate(r) for r in rows]
        finally:
            session.close()


__all__ = ["AttemptLedger"]
