"""Scan job scheduling using asyncio.

Keeps an in-memory registry of in-flight scan jobs keyed by video id, so at
most one job runs per video. Jobs execute on a bounded worker pool; detection
for each frame runs in a thread so blocking detectors never stall the loop.
"""

import asyncio
import logging
import threading
import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from surfacescan.config import Settings, settings
from surfacescan.errors import ScanError, ScanTimeout
from surfacescan.ml.base import BaseSurfaceDetector
from surfacescan.ml.types import Frame, RawDetection
from surfacescan.models.video import ScanStatus
from surfacescan.services.aggregator import AggregatedSurface, AggregatorConfig, ResultAggregator
from surfacescan.services.frame_sampler import FrameSampler, VideoMetadata, plan_timestamps
from surfacescan.services.frame_store import FrameStore
from surfacescan.services.result_store import ResultStore

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    """Lifecycle of a scan job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class CancellationToken:
    """Thread-safe flag checked by the frame loop between frames."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class JobProgress:
    """Progress information for a job."""

    current: int = 0
    total: int = 0
    message: str = ""

    @property
    def percentage(self) -> float:
        """Get progress as percentage (0-100)."""
        if self.total == 0:
            return 0.0
        return min(self.current / self.total, 1.0) * 100


@dataclass
class ScanJob:
    """Handle for one in-flight scan of a video."""

    video_id: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: JobState = JobState.QUEUED
    retry_count: int = 0
    progress: JobProgress = field(default_factory=JobProgress)
    cancel_token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    status: ScanStatus | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    _task: asyncio.Task | None = field(default=None, repr=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state in (JobState.QUEUED, JobState.RUNNING)

    async def wait(self, timeout: float | None = None) -> "ScanJob":
        """Wait until the job reaches a terminal state.

        Raises:
            asyncio.TimeoutError: If the job is still running after ``timeout``.
        """
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert job to dictionary for API responses."""
        return {
            "id": self.id,
            "video_id": self.video_id,
            "state": self.state.value,
            "retry_count": self.retry_count,
            "progress": {
                "current": self.progress.current,
                "total": self.progress.total,
                "percentage": self.progress.percentage,
                "message": self.progress.message,
            },
            "status": self.status.encode() if self.status else None,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class SchedulerConfig:
    """Job execution policy."""

    max_concurrent_scans: int = 4
    deadline_seconds: float = 120.0
    max_retries: int = 2
    retry_backoff_seconds: float = 1.0
    sample_rate_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.max_concurrent_scans < 1:
            raise ValueError("max_concurrent_scans must be at least 1")
        if self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")

    @classmethod
    def from_settings(cls, config: Settings) -> "SchedulerConfig":
        return cls(
            max_concurrent_scans=config.max_concurrent_scans,
            deadline_seconds=config.scan_deadline_seconds,
            max_retries=config.scan_max_retries,
            retry_backoff_seconds=config.scan_retry_backoff_seconds,
            sample_rate_seconds=config.frame_sample_rate_seconds,
        )


class FrameSource(Protocol):
    """What the scheduler needs from a frame sampler."""

    max_frames: int

    def sample(
        self,
        video_ref: str,
        rate_seconds: float | None = None,
        on_metadata: Callable[[VideoMetadata], None] | None = None,
    ) -> Iterator[Frame]: ...


FrameResults = list[tuple[Frame, list[RawDetection]]]
DetectorFactory = Callable[[], BaseSurfaceDetector]


class ScanScheduler:
    """Runs scan jobs with at most one in-flight job per video.

    Only registration and deregistration of jobs happen under the registry
    lock; sampling, detection and persistence run outside it, so different
    videos scan fully in parallel up to the pool size.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sampler: FrameSource,
        detector_factory: DetectorFactory,
        aggregator: ResultAggregator | None = None,
        frame_store: FrameStore | None = None,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sampler = sampler
        self._detector_factory = detector_factory
        self._aggregator = aggregator or ResultAggregator()
        self._frame_store = frame_store
        self._config = config or SchedulerConfig()
        self._jobs: dict[int, ScanJob] = {}
        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_scans)

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    async def request_scan(self, video_id: int) -> tuple[ScanJob, bool]:
        """Start a scan for a video unless one is already running.

        Returns:
            (job, started) where ``started`` is False when an in-flight job for
            the video was returned instead of starting a new one.

        Raises:
            VideoNotFound: If the video does not exist.
        """
        async with self._session_factory() as session:
            await ResultStore(session).require_video(video_id)

        async with self._lock:
            existing = self._jobs.get(video_id)
            if existing is not None:
                return existing, False
            job = ScanJob(video_id=video_id)
            self._jobs[video_id] = job

        try:
            async with self._session_factory() as session:
                await ResultStore(session).set_status(video_id, ScanStatus.scanning())
        except Exception:
            async with self._lock:
                self._jobs.pop(video_id, None)
            raise

        job._task = asyncio.create_task(self._execute(job), name=f"scan-{video_id}")
        logger.info(f"Scan job {job.id} started for video {video_id}")
        return job, True

    async def request_batch_scan(self, limit: int) -> list[ScanJob]:
        """Start scans for up to ``limit`` pending videos, highest priority first.

        A failure to start one video's job does not prevent the others.
        """
        if limit <= 0:
            return []

        async with self._session_factory() as session:
            pending = await ResultStore(session).get_pending_videos(limit)

        jobs = []
        for video in pending:
            try:
                job, _ = await self.request_scan(video.id)
            except Exception:
                logger.exception(f"Failed to start scan for video {video.id}")
                continue
            jobs.append(job)

        logger.info(f"Batch scan enqueued {len(jobs)} of {len(pending)} pending videos")
        return jobs

    def get_job(self, video_id: int) -> ScanJob | None:
        return self._jobs.get(video_id)

    @property
    def active_jobs(self) -> list[ScanJob]:
        return list(self._jobs.values())

    async def cancel_scan(self, video_id: int) -> bool:
        """Cancel the in-flight scan of a video.

        Returns:
            True if a job was cancelled, False if none was running.
        """
        job = self._jobs.get(video_id)
        if job is None:
            return False

        job.cancel_token.cancel()
        if job._task is not None and not job._task.done():
            job._task.cancel()
            try:
                await job._task
            except asyncio.CancelledError:
                pass
        return True

    async def shutdown(self) -> None:
        """Cancel all in-flight jobs and wait for them to settle."""
        jobs = self.active_jobs
        tasks = []
        for job in jobs:
            job.cancel_token.cancel()
            if job._task is not None and not job._task.done():
                job._task.cancel()
                tasks.append(job._task)
        if tasks:
            logger.info(f"Cancelling {len(tasks)} in-flight scan jobs")
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _execute(self, job: ScanJob) -> None:
        """Run a job on the worker pool and deregister it when done."""
        try:
            async with self._semaphore:
                job.state = JobState.RUNNING
                job.started_at = datetime.now(timezone.utc)
                await self._run(job)
        except asyncio.CancelledError:
            job.cancel_token.cancel()
            job.state = JobState.CANCELLED
            job.error = "Scan cancelled"
            logger.warning(f"Video {job.video_id}: scan job {job.id} cancelled")
            await self._mark_failed(job)
            raise
        finally:
            job.completed_at = datetime.now(timezone.utc)
            async with self._lock:
                if self._jobs.get(job.video_id) is job:
                    del self._jobs[job.video_id]
            job._done.set()

    async def _run(self, job: ScanJob) -> None:
        deadline = self._config.deadline_seconds

        try:
            frame_results, duration = await asyncio.wait_for(
                self._detect_with_retries(job), timeout=deadline
            )
        except asyncio.TimeoutError:
            job.cancel_token.cancel()
            job.state = JobState.TIMED_OUT
            error = ScanTimeout(f"Scan exceeded deadline of {deadline:g}s")
            job.error = f"{type(error).__name__}: {error}"
            logger.warning(f"Video {job.video_id}: {job.error}")
            await self._mark_failed(job)
            return
        except ScanError as e:
            job.state = JobState.FAILED
            job.error = f"{type(e).__name__}: {e}"
            logger.warning(f"Video {job.video_id}: scan failed after {job.retry_count} retries: {job.error}")
            await self._mark_failed(job)
            return
        except Exception as e:
            job.state = JobState.FAILED
            job.error = str(e)
            logger.exception(f"Video {job.video_id}: unexpected scan error")
            await self._mark_failed(job)
            return

        try:
            surfaces = self._aggregator.aggregate(job.video_id, frame_results)
            if self._frame_store is not None and surfaces:
                surfaces = await asyncio.to_thread(
                    self._frame_store.attach_frames,
                    job.video_id,
                    surfaces,
                    [frame for frame, _ in frame_results],
                )
            async with self._session_factory() as session:
                job.status = await ResultStore(session).replace_surfaces(
                    job.video_id, surfaces, duration_seconds=duration
                )
        except Exception as e:
            job.state = JobState.FAILED
            job.error = str(e)
            logger.exception(f"Video {job.video_id}: failed to store scan results")
            await self._prune_frames(job.video_id, [])
            await self._mark_failed(job)
            return

        await self._prune_frames(job.video_id, surfaces)
        job.state = JobState.SUCCEEDED
        logger.info(f"Video {job.video_id}: scan job {job.id} finished with status {job.status}")

    async def _prune_frames(self, video_id: int, surfaces: Sequence[AggregatedSurface]) -> None:
        """Remove frame images that the stored surfaces no longer reference."""
        if self._frame_store is None:
            return
        try:
            await asyncio.to_thread(
                self._frame_store.prune_frames, video_id, [s.frame_url for s in surfaces]
            )
        except OSError:
            logger.warning(f"Video {video_id}: failed to remove stale frame images", exc_info=True)

    async def _detect_with_retries(self, job: ScanJob) -> tuple[FrameResults, float | None]:
        """Sample and detect, retrying transient failures with exponential backoff."""
        async with self._session_factory() as session:
            video = await ResultStore(session).require_video(job.video_id)
            source_ref = video.source_ref

        while True:
            try:
                detector = self._detector_factory()
                return await asyncio.to_thread(self._collect_detections, job, source_ref, detector)
            except ScanError as e:
                if not e.retryable or job.retry_count >= self._config.max_retries:
                    raise
                job.retry_count += 1
                delay = self._config.retry_backoff_seconds * 2 ** (job.retry_count - 1)
                logger.warning(
                    f"Video {job.video_id}: {type(e).__name__} ({e}), "
                    f"retry {job.retry_count}/{self._config.max_retries} in {delay:g}s"
                )
                await asyncio.sleep(delay)

    def _collect_detections(
        self,
        job: ScanJob,
        source_ref: str,
        detector: BaseSurfaceDetector,
    ) -> tuple[FrameResults, float | None]:
        """Frame loop, run in a worker thread.

        The cancellation token is checked between frames, never mid-frame.
        Only frames with at least one detection are kept.
        """
        rate = self._config.sample_rate_seconds
        duration: float | None = None
        results: FrameResults = []

        def on_metadata(metadata: VideoMetadata) -> None:
            nonlocal duration
            duration = metadata.duration_seconds
            job.progress.total = len(
                plan_timestamps(metadata.duration_seconds, rate, self._sampler.max_frames)
            )

        job.progress.current = 0
        job.progress.message = "Sampling frames"

        with closing(self._sampler.sample(source_ref, rate, on_metadata=on_metadata)) as frames:
            for index, frame in enumerate(frames, start=1):
                if job.cancel_token.is_cancelled:
                    logger.debug(f"Video {job.video_id}: frame loop stopped at {frame.timestamp}s")
                    break

                detections = detector.detect(frame)
                if detections:
                    results.append((frame, detections))

                job.progress.current = index
                job.progress.message = f"Scanned {index}/{job.progress.total or '?'} frames"

        return results, duration

    async def _mark_failed(self, job: ScanJob) -> None:
        job.status = ScanStatus.failed()
        try:
            async with self._session_factory() as session:
                await ResultStore(session).set_status(job.video_id, job.status)
        except Exception:
            logger.exception(f"Video {job.video_id}: could not record failed scan status")


def build_scan_scheduler(
    config: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> ScanScheduler:
    """Create a scheduler wired from configuration."""
    from surfacescan.database import async_session_maker
    from surfacescan.ml.factory import get_detector

    config = config or settings
    backend = config.detection_backend

    return ScanScheduler(
        session_factory=session_factory or async_session_maker,
        sampler=FrameSampler(
            rate_seconds=config.frame_sample_rate_seconds,
            max_frames=config.max_frames_per_video,
            max_dimension=config.frame_max_dimension,
            download_timeout_seconds=config.download_timeout_seconds,
            min_free_disk_mb=config.min_free_disk_mb,
        ),
        detector_factory=lambda: get_detector(backend),
        aggregator=ResultAggregator(
            AggregatorConfig(
                window_seconds=config.dedup_window_seconds,
                iou_threshold=config.dedup_iou_threshold,
            )
        ),
        frame_store=FrameStore(config.frame_storage_path) if config.save_frames else None,
        config=SchedulerConfig.from_settings(config),
    )


# Global scheduler instance
_scan_scheduler: ScanScheduler | None = None


def get_scan_scheduler() -> ScanScheduler:
    """Get the global scan scheduler, creating it on first call."""
    global _scan_scheduler
    if _scan_scheduler is None:
        _scan_scheduler = build_scan_scheduler()
    return _scan_scheduler


async def shutdown_scan_scheduler() -> None:
    """Shut down the global scheduler if it was ever created."""
    if _scan_scheduler is not None:
        await _scan_scheduler.shutdown()


def reset_scan_scheduler() -> None:
    """Reset the global scan scheduler (primarily for testing)."""
    global _scan_scheduler
    _scan_scheduler = None
