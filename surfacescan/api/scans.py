"""Scan job API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from surfacescan.errors import VideoNotFound
from surfacescan.schemas.scan import BatchScanEnqueued, ScanJob, ScanJobList, ScanStarted
from surfacescan.services.scan_scheduler import ScanScheduler, get_scan_scheduler

router = APIRouter(prefix="/video-scan", tags=["scans"])


# Declared before /{video_id} so "batch" is never parsed as a video id
@router.post("/batch", response_model=BatchScanEnqueued, status_code=status.HTTP_202_ACCEPTED)
async def start_batch_scan(
    scheduler: Annotated[ScanScheduler, Depends(get_scan_scheduler)],
    limit: int = Query(10, ge=1, le=100, description="Maximum number of pending videos to scan"),
) -> BatchScanEnqueued:
    """Start scans for the highest-priority videos in Pending Scan status."""
    jobs = await scheduler.request_batch_scan(limit)
    return BatchScanEnqueued(enqueued=len(jobs))


@router.get("/jobs", response_model=ScanJobList)
async def list_scan_jobs(
    scheduler: Annotated[ScanScheduler, Depends(get_scan_scheduler)],
) -> ScanJobList:
    """List in-flight scan jobs."""
    jobs = [ScanJob.model_validate(job.to_dict()) for job in scheduler.active_jobs]
    return ScanJobList(jobs=jobs, total=len(jobs))


@router.post("/{video_id}", response_model=ScanStarted, status_code=status.HTTP_202_ACCEPTED)
async def start_scan(
    video_id: int,
    scheduler: Annotated[ScanScheduler, Depends(get_scan_scheduler)],
) -> ScanStarted:
    """Start a surface scan for a video.

    Idempotent while a scan is running: a second request returns
    ``jobStarted: false`` instead of starting another job. Poll
    GET /video/{video_id} until the status is terminal.
    """
    try:
        _, started = await scheduler.request_scan(video_id)
    except VideoNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Video with id {video_id} not found",
        )
    return ScanStarted(job_started=started)
