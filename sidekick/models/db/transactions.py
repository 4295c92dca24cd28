from __future__ import annotations
"""SQLAlchemy model for the transaction log (one row per submitted or failed transfer)."""
from datetime import datetime
from typing import Any

from sqlalchemy import Integer, String, DateTime, Text, JSON, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from sidekick.database import Base
from .enums import TransactionStatus


class Transaction(Base):
    __tablename__ = "transactions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    hash: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    tx_url: Mapped[str | None] = mapped_column(String, nullable=True)
    chain_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String, default=TransactionStatus.PENDING.value, index=True)
    from_address: Mapped[str | None] = mapped_column(String, nullable=True)
    to_address: Mapped[str | None] = mapped_column(String, nullable=True)
    data: Mapped[str | None] = mapped_column(Text, nullable=True)
    function_name: Mapped[str | None] = mapped_column(String, nullable=True)
    args_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_deploy_tx: Mapped[bool] = mapped_column(Boolean, default=False)
    # Correlates the row with the tick that produced it
    schedule_key: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    run_id: Mapped[str | None] = mapped_column(String, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
