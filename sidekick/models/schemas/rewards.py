"""
Pydantic schemas for reward schedules.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _amounts_as_strings(value):
    # uint256 amounts may arrive as JSON numbers or decimal strings
    if isinstance(value, list):
        return [str(v) if isinstance(v, int) and not isinstance(v, bool) else v for v in value]
    return value


class ScheduleRewardsRequest(BaseModel):
    """Body of POST /erc20/schedule/{chainId}/{contractAddress}/transfer."""
    users: List[str] = Field(description="Recipient addresses")
    amounts: List[str] = Field(description="Token amounts in base units, one per user")
    timeframe: float = Field(description="Interval between distributions, in minutes")

    normalize_amounts = field_validator("amounts", mode="before")(_amounts_as_strings)


class StartRewardsRequest(BaseModel):
    """Body of POST /jobs/erc20/rewards/{chainId}/{contractAddress}/start (bounded schedule)."""
    recipients: List[str]
    amounts: List[str]
    every_x_minutes: float
    repeat_count: Optional[int] = Field(None, description="Number of ticks after which the schedule stops")

    normalize_amounts = field_validator("amounts", mode="before")(_amounts_as_strings)


class ScheduleCreated(BaseModel):
    message: str
    jobId: str
    repeatJobKey: str
    users: int = Field(description="Number of recipients")
    timeframe: float
    nextRun: str = Field(description="ISO-8601 UTC time of the first tick")
    repeatLimit: Optional[int] = None


class ScheduleRead(BaseModel):
    scheduleKey: str
    chainId: str
    contractAddress: str
    jobId: str
    repeatJobKey: str
    users: List[str]
    amounts: List[str]
    timeframe: float
    createdAt: Optional[str] = None
    repeatLimit: Optional[int] = None
    nextRun: Optional[str] = None


class AttemptRead(BaseModel):
    id: int
    schedule_key: str
    tick_ts: int
    recipient: str
    amount: str
    status: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("status", mode="before")
    @classmethod
    def _enum_value(cls, v):
        return getattr(v, "value", v)


class ScheduleList(BaseModel):
    schedules: List[ScheduleRead]
