"""
Pydantic schemas for queue inspection.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel


class RunRead(BaseModel):
    """One fired tick of a repeating task."""
    id: str
    jobId: str
    repeatJobKey: str
    name: str
    data: Dict[str, Any]
    status: str
    scheduledFor: str
    processedOn: str
    finishedOn: str
    result: Optional[Dict[str, Any]] = None
    failedReason: Optional[str] = None
    exhausted: bool = False


class RepeatingJobRead(BaseModel):
    jobId: str
    repeatJobKey: str
    name: str
    every: int
    data: Dict[str, Any]
    limit: Optional[int] = None
    count: int = 0
    createdAt: str
    nextRun: Optional[str] = None


class ReconcileReport(BaseModel):
    orphanedTasksCancelled: list[str]
    danglingRecordsDeleted: list[str]


class RunList(BaseModel):
    jobs: List[RunRead]


class RepeatingJobList(BaseModel):
    repeating: List[RepeatingJobRead]
