"""Observability helpers (correlation IDs)."""
from __future__ import annotations
import uuid
from typing import Mapping

REQUEST_ID_HEADER = "X-Request-ID"

def ensure_request_id(headers: Mapping[str, str]) -> str:
    return headers.get(REQUEST_ID_HEADER, None) or str(uuid.uuid4())

def new_run_id(job_id: str, scheduled_for_ms: int) -> str:
    """Identifier of one tick of a repeating job (stable across redeliveries)."""
    return f"{job_id}:{scheduled_for_ms}"

__all__ = ["ensure_request_id", "new_run_id", "REQUEST_ID_HEADER"]
