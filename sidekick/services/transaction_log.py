"""Transaction log: append-only record of every transfer the executor attempted.

Writes are fire-and-forget from the executor's point of view: a failing log
write is logged and swallowed so it never changes a tick's outcome.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from sidekick.config import CHAIN_SETTINGS
from sidekick.database import SessionLocal
from sidekick.models.db import Transaction, TransactionStatus
from sidekick.models.schemas import TransactionRead
from sidekick.utils import get_logger

logger = get_logger(__name__)


def tx_url_for(chain_id: str, tx_hash: Optional[str]) -> Optional[str]:
    explorers: dict = CHAIN_SETTINGS.get("explorer_urls") or {}  # type: ignore[assignment]
    base = explorers.get(str(chain_id).lower())
    if not base or not tx_hash:
        return None
    return f"{base}/tx/{tx_hash}"


class TransactionLogStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def create_transaction(
        self,
        chain_id: str,
        contract_address: str,
        abi: Optional[list[dict[str, Any]]],
        data: Optional[str],
        tx_hash: Optional[str],
        is_deploy_tx: bool,
        args: Optional[dict[str, Any]],
        function_name: Optional[str],
        *,
        status: TransactionStatus = TransactionStatus.PENDING,
        from_address: Optional[str] = None,
        schedule_key: Optional[str] = None,
        run_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[int]:
        """Insert one row; returns its id, or None when the write failed."""
        session = self._session_factory()
        try:
            row = Transaction(
                hash=tx_hash,
                tx_url=tx_url_for(chain_id, tx_hash),
                chain_id=str(chain_id),
                status=status.value,
                from_address=from_address,
                to_address=contract_address,
                data=data,
                function_name=function_name,
                # abi is accepted for interface parity; only the call arguments are stored
                args_json=args,
                is_deploy_tx=is_deploy_tx,
                schedule_key=schedule_key,
                run_id=run_id,
                error=error,
            )
            session.add(row)
            session.commit()
            return row.id
        except Exception as e:
            session.rollback()
            logger.error("Failed to record transaction", chain_id=chain_id, tx_hash=tx_hash, error=str(e), exc_info=True)
            return None
        finally:
            session.close()

    def update_status(self, tx_hash: str, status: TransactionStatus, *, error: Optional[str] = None) -> bool:
        session = self._session_factory()
        try:
            rows = session.scalars(select(Transaction).where(Transaction.hash == tx_hash)).all()
            for row in rows:
                row.status = status.value
                if error:
                    row.error = error
            session.commit()
            return bool(rows)
        except Exception as e:
            session.rollback()
            logger.error("Failed to update transaction status", tx_hash=tx_hash, error=str(e), exc_info=True)
            return False
        finally:
            session.close()

    def list(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        chain_id: Optional[str] = None,
        status: Optional[str] = None,
        schedule_key: Optional[str] = None,
    ) -> list[TransactionRead]:
        session = self._session_factory()
        try:
            stmt = select(Transaction)
            if chain_id:
                stmt = stmt.where(Transaction.chain_id == str(chain_id))
            if status:
                stmt = stmt.where(Transaction.status == status)
            if schedule_key:
                stmt = stmt.where(Transaction.schedule_key == schedule_key)
            stmt = stmt.order_by(Transaction.id.desc()).offset(offset).limit(limit)
            return [TransactionRead.model_validate(row) for row in session.scalars(stmt).all()]
        finally:
            session.close()

    def get_by_hash(self, tx_hash: str) -> Optional[TransactionRead]:
        session = self._session_factory()
        try:
            row = session.scalars(
                select(Transaction).where(Transaction.hash == tx_hash).order_by(Transaction.id.desc())
            ).first()
            return TransactionRead.model_validate(row) if row is not None else None
        finally:
            session.close()


__all__ = ["TransactionLogStore", "tx_url_for"]
