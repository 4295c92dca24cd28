"""
Queue inspection and maintenance endpoints.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from sidekick.api.deps import get_queue, get_request_id, get_scheduler, require_secret_key
from sidekick.errors import NotFoundError
from sidekick.jobs.queue import RepeatingJob, RunRecord
from sidekick.models.schemas import ErrorResponse, ReconcileReport, RepeatingJobList, ResultResponse, RunList
from sidekick.utils import get_logger, log_business_event
from sidekick.utils.time import ms_to_iso

router = APIRouter()
logger = get_logger(__name__)


def run_to_dict(run: RunRecord) -> Dict[str, Any]:
    return {
        "id": run.run_id,
        "jobId": run.job_id,
        "repeatJobKey": run.repeat_key,
        "name": run.name,
        "data": run.payload,
        "status": run.status,
        "scheduledFor": ms_to_iso(run.scheduled_for),
        "processedOn": ms_to_iso(run.processed_on),
        "finishedOn": ms_to_iso(run.finished_on),
        "result": run.result,
        "failedReason": run.failed_reason,
        "exhausted": run.exhausted,
    }


def repeating_to_dict(job: RepeatingJob) -> Dict[str, Any]:
    return {
        "jobId": job.job_id,
        "repeatJobKey": job.repeat_key,
        "name": job.name,
        "every": job.every_ms,
        "data": job.payload,
        "limit": job.limit,
        "count": job.count,
        "createdAt": ms_to_iso(job.created_at),
        "nextRun": ms_to_iso(job.next_run_at) if job.next_run_at else None,
    }


@router.get("", summary="List recent tick runs", response_model=ResultResponse[RunList])
def list_jobs(
    status_filter: Optional[str] = Query(None, alias="status", pattern="^(completed|partial|failed)$"),
    limit: int = Query(100, ge=1, le=1000),
    queue=Depends(get_queue),
) -> Dict[str, Any]:
    runs = queue.recent_runs(status=status_filter, limit=limit)
    return {"result": {"jobs": [run_to_dict(r) for r in runs]}}


@router.get("/repeating", summary="List registered repeating tasks", response_model=ResultResponse[RepeatingJobList])
def list_repeating(queue=Depends(get_queue)) -> Dict[str, Any]:
    return {"result": {"repeating": [repeating_to_dict(j) for j in queue.list_repeating()]}}


@router.post("/clean", summary="Remove all repeating tasks, run history and schedules", dependencies=[Depends(require_secret_key)])
def clean_jobs(scheduler=Depends(get_scheduler), request_id: Optional[str] = Depends(get_request_id)) -> Dict[str, Any]:
    logger.warning("Queue clean requested", request_id=request_id)
    summary = scheduler.clean()
    return {"result": {"message": "Jobs cleaned successfully", **summary}}


@router.post("/reconcile", summary="Repair divergence between queue and job store", response_model=ResultResponse[ReconcileReport], dependencies=[Depends(require_secret_key)])
def reconcile_jobs(scheduler=Depends(get_scheduler), request_id: Optional[str] = Depends(get_request_id)) -> Dict[str, Any]:
    report = scheduler.reconcile()
    log_business_event("queue_reconciled", report, request_id=request_id)
    return {"result": report}


@router.get("/{job_id}", summary="Get one tick run, or the repeating task with this job id", responses={404: {"model": ErrorResponse}})
def get_job(job_id: str, queue=Depends(get_queue)) -> Dict[str, Any]:
    run = queue.get_run(job_id)
    if run is not None:
        return {"result": run_to_dict(run)}
    for job in queue.list_repeating():
        if job.job_id == job_id:
            return {"result": {**repeating_to_dict(job), "status": "repeating"}}
    raise NotFoundError("Job not found")
