"""
Pydantic schemas for the transaction log.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class TransactionRead(BaseModel):
    id: int
    hash: Optional[str] = None
    tx_url: Optional[str] = None
    chain_id: str
    status: str
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    data: Optional[str] = None
    function_name: Optional[str] = None
    args_json: Optional[Dict[str, Any]] = None
    is_deploy_tx: bool = False
    schedule_key: Optional[str] = None
    run_id: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
