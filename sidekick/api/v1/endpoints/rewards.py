"""
Reward schedule endpoints.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from sidekick.api.deps import get_attempt_ledger, get_request_id, get_scheduler, require_secret_key
from sidekick.errors import NotFoundError
from sidekick.jobs.reward_job import ScheduleKey
from sidekick.models.schemas import (
    ErrorResponse,
    ResultResponse,
    ScheduleCreated,
    ScheduleList,
    ScheduleRead,
    ScheduleRewardsRequest,
    StartRewardsRequest,
)
from sidekick.services.job_store import ms_to_minutes
from sidekick.utils import get_logger
from sidekick.utils.time import ms_to_iso

router = APIRouter()
logger = get_logger(__name__)


def _created_result(record, message: str) -> Dict[str, Any]:
    result = {
        "message": message,
        "jobId": record.job_id,
        "repeatJobKey": record.repeat_job_key,
        "users": len(record.recipients),
        "timeframe": ms_to_minutes(record.interval_ms),
        "nextRun": ms_to_iso(record.next_run_at or (record.created_at + record.interval_ms)),
    }
    if record.repeat_limit is not None:
        result["repeatLimit"] = record.repeat_limit
    return result


@router.post(
    "/erc20/schedule/{chain_id}/{contract_address}/transfer",
    summary="Schedule a recurring ERC20 reward distribution",
    response_model=ResultResponse[ScheduleCreated],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    dependencies=[Depends(require_secret_key)],
)
def schedule_rewards(
    chain_id: str,
    contract_address: str,
    body: ScheduleRewardsRequest,
    scheduler=Depends(get_scheduler),
    request_id: Optional[str] = Depends(get_request_id),
) -> Dict[str, Any]:
    """Every ``timeframe`` minutes, transfer ``amounts[i]`` tokens to ``users[i]``."""
    logger.info(
        "Reward schedule requested",
        chain_id=chain_id,
        contract_address=contract_address,
        users=len(body.users),
        timeframe=body.timeframe,
        request_id=request_id,
    )
    record = scheduler.create_schedule(
        chain_id, contract_address, body.users, body.amounts, body.timeframe, request_id=request_id
    )
    return {"result": _created_result(record, "Rewards distribution scheduled")}


@router.get(
    "/erc20/schedule/{chain_id}/{contract_address}",
    summary="Get the active reward schedule of a contract",
    response_model=ResultResponse[ScheduleRead],
    responses={404: {"model": ErrorResponse}},
)
def get_reward_schedule(chain_id: str, contract_address: str, scheduler=Depends(get_scheduler)) -> Dict[str, Any]:
    record = scheduler.get_schedule(chain_id, contract_address)
    if record is None:
        raise NotFoundError("No active jobs found")
    return {"result": record.to_read()}


@router.get(
    "/erc20/schedule/{chain_id}/{contract_address}/attempts",
    summary="Recent per-recipient transfer attempts of a schedule",
)
def get_reward_attempts(
    chain_id: str,
    contract_address: str,
    limit: int = Query(100, ge=1, le=1000),
    ledger=Depends(get_attempt_ledger),
) -> Dict[str, Any]:
    schedule_key = ScheduleKey(chain_id, contract_address).render()
    attempts = ledger.list_for_schedule(schedule_key, limit=limit)
    return {"result": {"scheduleKey": schedule_key, "attempts": [a.model_dump(mode="json") for a in attempts]}}


@router.get("/erc20/schedules", summary="List every active reward schedule", response_model=ResultResponse[ScheduleList])
def list_reward_schedules(scheduler=Depends(get_scheduler)) -> Dict[str, Any]:
    return {"result": {"schedules": [r.to_read() for r in scheduler.list_schedules()]}}


@router.post(
    "/jobs/erc20/rewards/{chain_id}/{contract_address}/start",
    summary="Start a reward distribution, optionally bounded to a number of runs",
    response_model=ResultResponse[ScheduleCreated],
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    dependencies=[Depends(require_secret_key)],
)
def start_rewards(
    chain_id: str,
    contract_address: str,
    body: StartRewardsRequest,
    scheduler=Depends(get_scheduler),
    request_id: Optional[str] = Depends(get_request_id),
) -> Dict[str, Any]:
    record = scheduler.create_schedule(
        chain_id,
        contract_address,
        body.recipients,
        body.amounts,
        body.every_x_minutes,
        repeat_limit=body.repeat_count,
        request_id=request_id,
    )
    return {"result": _created_result(record, "Rewards distribution scheduled")}


@router.post(
    "/jobs/erc20/rewards/{chain_id}/{contract_address}/stop",
    summary="Stop the reward distribution of a contract",
    responses={404: {"model": ErrorResponse}},
    dependencies=[Depends(require_secret_key)],
)
def stop_rewards(
    chain_id: str,
    contract_address: str,
    scheduler=Depends(get_scheduler),
    request_id: Optional[str] = Depends(get_request_id),
) -> Dict[str, Any]:
    record = scheduler.cancel_schedule(chain_id, contract_address, request_id=request_id)
    return {"result": {"message": "Rewards distribution stopped", "jobId": record.job_id}}
