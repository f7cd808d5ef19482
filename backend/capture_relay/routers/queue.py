"""Queue router: trigger dispatch, inspect jobs, abandon stuck work."""
from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from capture_relay.dependencies import get_dispatcher, get_queue
from capture_relay.models.job import JobStatus, QueueJobRead
from capture_relay.services.job_queue import JobQueue
from capture_relay.worker import Dispatcher

router = APIRouter(prefix="/api/queue", tags=["queue"])


class FailJobRequest(BaseModel):
    reason: str = "Cancelled by operator"


@router.post("/process")
async def process_queue(dispatcher: Dispatcher = Depends(get_dispatcher)) -> dict:
    """Run one dispatch tick now and report what it did."""
    result = await asyncio.to_thread(dispatcher.tick)
    return result.as_dict()


@router.get("/stats")
async def queue_stats(queue: JobQueue = Depends(get_queue)) -> dict:
    return queue.stats()


@router.get("/jobs", response_model=list[QueueJobRead])
async def list_jobs(
    status: JobStatus | None = None,
    capture_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    queue: JobQueue = Depends(get_queue),
) -> list[QueueJobRead]:
    jobs = queue.list_jobs(
        status=status.value if status else None,
        capture_id=capture_id,
        limit=limit,
        offset=offset,
    )
    return [QueueJobRead.model_validate(j) for j in jobs]


@router.get("/jobs/{job_id}", response_model=QueueJobRead)
async def get_job(job_id: int, queue: JobQueue = Depends(get_queue)) -> QueueJobRead:
    job = queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return QueueJobRead.model_validate(job)


@router.post("/jobs/{job_id}/fail", response_model=QueueJobRead)
async def fail_job(
    job_id: int,
    body: FailJobRequest | None = None,
    queue: JobQueue = Depends(get_queue),
) -> QueueJobRead:
    """Mark a pending or processing job as permanently failed."""
    job = queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    reason = body.reason if body else FailJobRequest().reason
    if not queue.mark_failed(job_id, reason):
        raise HTTPException(status_code=409, detail="Job is already completed or failed")
    return QueueJobRead.model_validate(queue.get(job_id))
