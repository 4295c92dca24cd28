from __future__ import annotations
"""SQLAlchemy model for per-recipient transfer attempts.

One row per (schedule, tick, recipient). The unique constraint is what makes a
replayed tick find its earlier attempt instead of paying the recipient twice.
"""
from datetime import datetime

from sqlalchemy import Integer, BigInteger, String, DateTime, Enum, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from sidekick.database import Base
from .enums import AttemptStatus


class TransferAttempt(Base):
    __tablename__ = "transfer_attempts"
    __table_args__ = (
        UniqueConstraint("schedule_key", "tick_ts", "recipient", name="uq_attempt_schedule_tick_recipient"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    schedule_key: Mapped[str] = mapped_column(String, nullable=False, index=True)
    # Scheduled fire time of the tick, epoch milliseconds
    tick_ts: Mapped[int] = mapped_column(BigInteger, nullable=False)
    recipient: Mapped[str] = mapped_column(String, nullable=False)
    # uint256 does not fit any SQL integer type
    amount: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[AttemptStatus] = mapped_column(Enum(AttemptStatus), default=AttemptStatus.PENDING, index=True)
    tx_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
