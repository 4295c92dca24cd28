from .base import ResultResponse, ErrorResponse
from .rewards import (
    ScheduleRewardsRequest,
    StartRewardsRequest,
    ScheduleCreated,
    ScheduleRead,
    ScheduleList,
    AttemptRead,
)
from .jobs import RunRead, RunList, RepeatingJobRead, RepeatingJobList, ReconcileReport
from .transactions import TransactionRead

__all__ = [
    # Base
    "ResultResponse",
    "ErrorResponse",

    # Rewards
    "ScheduleRewardsRequest",
    "StartRewardsRequest",
    "ScheduleCreated",
    "ScheduleRead",
    "ScheduleList",
    "AttemptRead",

    # Jobs
    "RunRead",
    "RunList",
    "RepeatingJobRead",
    "RepeatingJobList",
    "ReconcileReport",

    # Transactions
    "TransactionRead",
]
