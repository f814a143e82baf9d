from __future__ import annotations

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from scribe.database import get_db
from scribe.errors import invalid_request, not_found
from scribe.models import Job, JobStatus
from scribe.schemas import (
    JobDetail, JobRead, JobResetResponse, ResetStuckRequest, ResetStuckResponse, WorkerHealth, WorkerReport,
)
from scribe.services.reclaimer import reset_job, reset_stuck_jobs
from scribe.services.worker import Worker, get_worker
from scribe.settings.config import settings
from scribe.utils import require_authenticated_user, require_worker_key

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Worker-key endpoints (cron / scheduler)
# ---------------------------------------------------------------------------
@router.post("/worker", response_model=WorkerReport, dependencies=[Depends(require_worker_key)])
async def run_worker(
    max_jobs: Optional[int] = Query(default=None, alias="maxJobs", ge=1, le=100),
    mode: Literal["single", "continuous"] = Query(default="single"),
    worker: Worker = Depends(get_worker),
):
    max_jobs = max_jobs or settings.WORKER_MAX_JOBS
    report = await worker.run_batch(max_jobs)
    if mode == "continuous" and worker.start_continuous(max_jobs):
        logger.info("Continuous worker loop started via HTTP")
    return report


@router.get("/worker", dependencies=[Depends(require_worker_key)])
async def worker_health(worker: Worker = Depends(get_worker)):
    return WorkerHealth(**worker.health()).model_dump(mode="json", by_alias=True)


@router.post("/reset-stuck", dependencies=[Depends(require_worker_key)])
async def reset_stuck(
    body: Optional[ResetStuckRequest] = Body(default=None),
    worker: Worker = Depends(get_worker),
):
    minutes = body.max_time_minutes if body else settings.STUCK_JOB_THRESHOLD_MINUTES
    summary = await reset_stuck_jobs(worker.store, minutes)
    return ResetStuckResponse(**summary).model_dump(by_alias=True)


@router.post("/{job_id}/reset", response_model=JobResetResponse, dependencies=[Depends(require_worker_key)])
async def reset_one(job_id: str, worker: Worker = Depends(get_worker)):
    if not await reset_job(worker.store, job_id):
        raise not_found("Job not found")
    job = await worker.store.get_job(job_id)
    return {"message": "Job reset successfully", "job": JobRead.model_validate(job)}


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------
@router.get("", response_model=List[JobRead])
async def list_my_jobs(
    transcription_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Job).where(Job.user_id == user.id)
    if status:
        try:
            stmt = stmt.where(Job.status == JobStatus(status))
        except ValueError:
            raise invalid_request(f"Unknown job status: {status}") from None
    if transcription_id:
        stmt = stmt.where(Job.payload["transcription_id"].as_string() == transcription_id)
    rows = (await db.execute(stmt.order_by(Job.created_at.desc()))).scalars().all()
    return rows


@router.get("/{job_id}", response_model=JobDetail)
async def get_my_job(
    job_id: str,
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    job = await db.scalar(
        select(Job).options(selectinload(Job.logs)).where(Job.id == job_id, Job.user_id == user.id)
    )
    if not job:
        raise not_found("Job not found")
    return job


__all__ = ["router"]
