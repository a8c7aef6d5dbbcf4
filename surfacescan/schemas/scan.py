"""Scan endpoint schemas."""

import datetime as dt

from pydantic import Field

from surfacescan.schemas.video import CamelModel


class ScanStarted(CamelModel):
    """Response to a single-video scan request."""

    job_started: bool = Field(description="False if a scan for this video was already running")


class BatchScanEnqueued(CamelModel):
    """Response to a batch scan request."""

    enqueued: int = Field(description="Number of scan jobs handed to the scheduler")


class JobProgress(CamelModel):
    """Progress information for a job."""

    current: int = Field(description="Frames scanned so far")
    total: int = Field(description="Frames planned, 0 until known")
    percentage: float = Field(description="Progress as percentage (0-100)")
    message: str = Field(description="Current status message")


class ScanJob(CamelModel):
    """An in-flight scan job."""

    id: str = Field(description="Unique job ID")
    video_id: int
    state: str = Field(description="queued or running")
    retry_count: int
    progress: JobProgress
    status: str | None = Field(None, description="Scan status string once the job has finished")
    error: str | None = None
    created_at: dt.datetime
    started_at: dt.datetime | None = None
    completed_at: dt.datetime | None = None


class ScanJobList(CamelModel):
    jobs: list[ScanJob]
    total: int
