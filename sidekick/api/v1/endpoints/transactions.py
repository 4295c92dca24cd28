"""
Transaction log endpoints.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from sidekick.api.deps import get_transaction_log
from sidekick.errors import NotFoundError
from sidekick.models.schemas import ErrorResponse

router = APIRouter()


@router.get("", summary="List logged transactions, most recent first")
def list_transactions(
    chain_id: Optional[str] = Query(None, alias="chainId"),
    status_filter: Optional[str] = Query(None, alias="status", pattern="^(pending|done|failed)$"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tx_log=Depends(get_transaction_log),
) -> Dict[str, Any]:
    rows = tx_log.list(limit=limit, offset=offset, chain_id=chain_id, status=status_filter)
    return {"result": {"transactions": [r.model_dump(mode="json") for r in rows], "limit": limit, "offset": offset}}


@router.get("/{tx_hash}", summary="Get a logged transaction by hash", responses={404: {"model": ErrorResponse}})
def get_transaction(tx_hash: str, tx_log=Depends(get_transaction_log)) -> Dict[str, Any]:
    row = tx_log.get_by_hash(tx_hash)
    if row is None:
        raise NotFoundError("Transaction not found")
    return {"result": row.model_dump(mode="json")}
