"""Pydantic schemas for API request/response validation."""

from surfacescan.schemas.scan import BatchScanEnqueued, JobProgress, ScanJob, ScanJobList, ScanStarted
from surfacescan.schemas.video import (
    BoundingBox,
    CamelModel,
    DetectedSurface,
    SurfaceList,
    Video,
    VideoCreate,
)

__all__ = [
    "BatchScanEnqueued",
    "BoundingBox",
    "CamelModel",
    "DetectedSurface",
    "JobProgress",
    "ScanJob",
    "ScanJobList",
    "ScanStarted",
    "SurfaceList",
    "Video",
    "VideoCreate",
]
