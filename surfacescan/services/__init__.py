"""Services for the surface scan pipeline."""

from surfacescan.services.aggregator import AggregatedSurface, AggregatorConfig, ResultAggregator
from surfacescan.services.frame_sampler import FrameSampler, VideoMetadata, plan_timestamps
from surfacescan.services.frame_store import FrameStore
from surfacescan.services.poller import (
    HttpStatusReader,
    PollOutcome,
    ScanPoller,
    StatusReader,
    StoreStatusReader,
)
from surfacescan.services.result_store import (
    DataSource,
    FixtureSurfaceSource,
    LiveSurfaceSource,
    ResultStore,
    SurfaceSource,
    make_surface_source,
)
from surfacescan.services.scan_scheduler import (
    CancellationToken,
    JobState,
    ScanJob,
    ScanScheduler,
    SchedulerConfig,
    build_scan_scheduler,
    get_scan_scheduler,
    reset_scan_scheduler,
)

__all__ = [
    "AggregatedSurface",
    "AggregatorConfig",
    "CancellationToken",
    "DataSource",
    "FixtureSurfaceSource",
    "FrameSampler",
    "FrameStore",
    "HttpStatusReader",
    "JobState",
    "LiveSurfaceSource",
    "PollOutcome",
    "ResultAggregator",
    "ResultStore",
    "ScanJob",
    "ScanPoller",
    "ScanScheduler",
    "SchedulerConfig",
    "StatusReader",
    "StoreStatusReader",
    "SurfaceSource",
    "VideoMetadata",
    "build_scan_scheduler",
    "get_scan_scheduler",
    "make_surface_source",
    "plan_timestamps",
    "reset_scan_scheduler",
]
