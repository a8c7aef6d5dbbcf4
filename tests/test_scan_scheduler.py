"""Tests for the scan job scheduler."""

import asyncio

import pytest

from stubs import StubDetector, StubSampler, detection
from surfacescan.errors import ModelUnavailable, ServiceError, SourceUnavailable, UnsupportedFormat, VideoNotFound
from surfacescan.models.video import ScanState, ScanStatus
from surfacescan.services.frame_store import FrameStore
from surfacescan.services.result_store import LiveSurfaceSource, ResultStore
from surfacescan.services.scan_scheduler import (
    CancellationToken,
    JobProgress,
    JobState,
    ScanJob,
    SchedulerConfig,
    build_scan_scheduler,
    get_scan_scheduler,
    reset_scan_scheduler,
)

DESK_AT_2S = {2.0: [detection("Desk", 0.8, 0.1, 0.5, 0.4, 0.3)]}


async def _status(session_factory, video_id: int) -> ScanStatus:
    async with session_factory() as session:
        return await ResultStore(session).get_status(video_id)


async def _surfaces(session_factory, video_id: int):
    async with session_factory() as session:
        return await ResultStore(session).get_surfaces(video_id)


class TestCancellationToken:
    def test_cancel(self):
        token = CancellationToken()
        assert not token.is_cancelled
        token.cancel()
        assert token.is_cancelled


class TestScanJob:
    """Tests for ScanJob dataclass."""

    def test_defaults(self):
        job = ScanJob(video_id=3)
        assert job.state == JobState.QUEUED
        assert job.retry_count == 0
        assert job.is_active
        assert job.id

    def test_to_dict(self):
        job = ScanJob(video_id=3)
        job.progress.current = 2
        job.progress.total = 4
        job.status = ScanStatus.from_count(2)

        data = job.to_dict()

        assert data["video_id"] == 3
        assert data["state"] == "queued"
        assert data["status"] == "Ready (2 Spots)"
        assert data["progress"]["percentage"] == 50.0
        assert data["started_at"] is None

    def test_progress_zero_total(self):
        assert JobProgress(current=0, total=0).percentage == 0.0


class TestScanScheduler:
    """Tests for ScanScheduler against stub samplers and detectors."""

    @pytest.mark.asyncio
    async def test_scan_ready(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        scheduler = make_scheduler(detector=StubDetector(DESK_AT_2S))

        job, started = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert started is True
        assert job.state == JobState.SUCCEEDED
        assert job.status == ScanStatus.from_count(1)
        assert await _status(session_factory, video_id) == ScanStatus.from_count(1)
        surfaces = await _surfaces(session_factory, video_id)
        assert [(s.surface_type, s.timestamp, s.confidence) for s in surfaces] == [("Desk", 2.0, 0.8)]
        assert scheduler.get_job(video_id) is None
        assert scheduler.active_jobs == []

    @pytest.mark.asyncio
    async def test_progress_and_duration_recorded(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        scheduler = make_scheduler(sampler=StubSampler(timestamps=(0.0, 2.0, 4.0), duration=6.0))

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert job.progress.current == 3
        assert job.progress.total == 3
        async with session_factory() as session:
            video = await ResultStore(session).require_video(video_id)
        assert video.duration_seconds == 6.0

    @pytest.mark.asyncio
    async def test_status_scanning_while_running(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        scheduler = make_scheduler(sampler=StubSampler(delay=0.1))

        job, _ = await scheduler.request_scan(video_id)

        assert await _status(session_factory, video_id) == ScanStatus.scanning()
        assert scheduler.get_job(video_id) is job
        await job.wait(timeout=5)

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_job(self, make_scheduler, session_factory, add_video):
        """Concurrent requests for one video never start a second worker."""
        video_id = await add_video()
        sampler = StubSampler(delay=0.05)
        detector = StubDetector(DESK_AT_2S)
        scheduler = make_scheduler(sampler=sampler, detector=detector)

        results = await asyncio.gather(*(scheduler.request_scan(video_id) for _ in range(5)))
        jobs = {id(job) for job, _ in results}
        started = [s for _, s in results]
        await results[0][0].wait(timeout=5)

        assert len(jobs) == 1
        assert started.count(True) == 1
        assert sampler.calls == 1
        assert detector.calls == 3
        assert len(await _surfaces(session_factory, video_id)) == 1

    @pytest.mark.asyncio
    async def test_request_while_running_returns_existing(self, make_scheduler, add_video):
        video_id = await add_video()
        scheduler = make_scheduler(sampler=StubSampler(delay=0.1))

        first, started_first = await scheduler.request_scan(video_id)
        second, started_second = await scheduler.request_scan(video_id)
        await first.wait(timeout=5)

        assert second is first
        assert (started_first, started_second) == (True, False)

    @pytest.mark.asyncio
    async def test_unknown_video(self, make_scheduler):
        scheduler = make_scheduler()
        with pytest.raises(VideoNotFound):
            await scheduler.request_scan(404)
        assert scheduler.active_jobs == []

    @pytest.mark.asyncio
    async def test_no_detections_is_no_surfaces_retry(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        scheduler = make_scheduler(detector=StubDetector({}))

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        status = await _status(session_factory, video_id)
        assert status.state == ScanState.NO_SURFACES_RETRY
        assert status.encode() == "Ready (0 Spots)"
        assert job.state == JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_empty_video_is_no_surfaces_retry(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        scheduler = make_scheduler(sampler=StubSampler(timestamps=(), duration=0.0))

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert (await _status(session_factory, video_id)).state == ScanState.NO_SURFACES_RETRY

    @pytest.mark.asyncio
    async def test_deadline_exceeded_writes_nothing(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        timestamps = [float(t) for t in range(0, 20, 2)]
        sampler = StubSampler(timestamps=timestamps, delay=0.2)
        detector = StubDetector({t: [detection("Desk", 0.9, 0.1, 0.1, 0.3, 0.3)] for t in timestamps})
        scheduler = make_scheduler(sampler=sampler, detector=detector, deadline_seconds=0.3)

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert job.state == JobState.TIMED_OUT
        assert job.cancel_token.is_cancelled
        assert await _status(session_factory, video_id) == ScanStatus.failed()
        assert await _surfaces(session_factory, video_id) == []

        # The frame loop stops at the next frame boundary
        await asyncio.sleep(0.5)
        assert sampler.frames_yielded < len(timestamps)

    @pytest.mark.asyncio
    async def test_failed_rescan_hides_previous_surfaces(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        await (await make_scheduler(detector=StubDetector(DESK_AT_2S)).request_scan(video_id))[0].wait(timeout=5)

        scheduler = make_scheduler(sampler=StubSampler(error=UnsupportedFormat("bad codec")))
        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert await _status(session_factory, video_id) == ScanStatus.failed()
        async with session_factory() as session:
            assert await LiveSurfaceSource(session).list_surfaces(video_id) == []

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        sampler = StubSampler()
        detector = StubDetector(DESK_AT_2S, errors=[ServiceError("502"), ModelUnavailable("warming up")])
        scheduler = make_scheduler(sampler=sampler, detector=detector, max_retries=2)

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert job.state == JobState.SUCCEEDED
        assert job.retry_count == 2
        assert sampler.calls == 3
        assert await _status(session_factory, video_id) == ScanStatus.from_count(1)

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        detector = StubDetector(DESK_AT_2S, errors=[ServiceError("down")] * 3)
        scheduler = make_scheduler(detector=detector, max_retries=2)

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert job.state == JobState.FAILED
        assert job.retry_count == 2
        assert "ServiceError" in job.error
        assert await _status(session_factory, video_id) == ScanStatus.failed()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [SourceUnavailable("gone"), UnsupportedFormat("bad codec")])
    async def test_permanent_errors_not_retried(self, make_scheduler, session_factory, add_video, error):
        video_id = await add_video()
        sampler = StubSampler(error=error)
        scheduler = make_scheduler(sampler=sampler)

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert sampler.calls == 1
        assert job.retry_count == 0
        assert job.state == JobState.FAILED
        assert await _status(session_factory, video_id) == ScanStatus.failed()

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_job(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        scheduler = make_scheduler(detector=StubDetector(errors=[RuntimeError("boom")]))

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert job.state == JobState.FAILED
        assert job.retry_count == 0
        assert await _status(session_factory, video_id) == ScanStatus.failed()

    @pytest.mark.asyncio
    async def test_rescan_replaces_surfaces(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        detector = StubDetector(DESK_AT_2S)
        scheduler = make_scheduler(detector=detector)

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)
        first_ids = {s.id for s in await _surfaces(session_factory, video_id)}

        detector.detections = {
            0.0: [detection("Wall", 0.7, 0.0, 0.0, 0.5, 0.5)],
            4.0: [detection("Monitor", 0.9, 0.5, 0.1, 0.3, 0.3)],
        }
        job, started = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        surfaces = await _surfaces(session_factory, video_id)
        assert started is True
        assert [s.surface_type for s in surfaces] == ["Wall", "Monitor"]
        assert not first_ids & {s.id for s in surfaces}
        assert await _status(session_factory, video_id) == ScanStatus.from_count(2)

    @pytest.mark.asyncio
    async def test_persisted_boxes_in_unit_square(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        detector = StubDetector({2.0: [detection("Wall", 0.9, 0.7, 0.8, 0.6, 0.5)]})
        scheduler = make_scheduler(detector=detector)

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        for s in await _surfaces(session_factory, video_id):
            assert 0 <= s.bounding_box_x <= 1 and 0 <= s.bounding_box_y <= 1
            assert s.bounding_box_x + s.bounding_box_width <= 1
            assert s.bounding_box_y + s.bounding_box_height <= 1

    @pytest.mark.asyncio
    async def test_batch_scan_limit(self, make_scheduler, session_factory, add_video):
        """Batch of 3 against 5 pending videos leaves 2 pending, highest priority first."""
        ids = [await add_video(priority_score=p) for p in (1, 50, 20, 5, 30)]
        scheduler = make_scheduler()

        jobs = await scheduler.request_batch_scan(3)
        for job in jobs:
            await job.wait(timeout=5)

        assert sorted(job.video_id for job in jobs) == sorted([ids[1], ids[2], ids[4]])
        assert await _status(session_factory, ids[0]) == ScanStatus.pending()
        assert await _status(session_factory, ids[3]) == ScanStatus.pending()
        for video_id in (ids[1], ids[2], ids[4]):
            assert (await _status(session_factory, video_id)).is_terminal

    @pytest.mark.asyncio
    async def test_batch_scan_isolates_failures(self, make_scheduler, add_video, monkeypatch):
        ids = [await add_video() for _ in range(3)]
        scheduler = make_scheduler()
        original = scheduler.request_scan

        async def flaky_request_scan(video_id):
            if video_id == ids[1]:
                raise RuntimeError("registry unavailable")
            return await original(video_id)

        monkeypatch.setattr(scheduler, "request_scan", flaky_request_scan)

        jobs = await scheduler.request_batch_scan(3)
        for job in jobs:
            await job.wait(timeout=5)

        assert [job.video_id for job in jobs] == [ids[0], ids[2]]

    @pytest.mark.asyncio
    async def test_batch_scan_zero_limit(self, make_scheduler, add_video):
        await add_video()
        assert await make_scheduler().request_batch_scan(0) == []

    @pytest.mark.asyncio
    async def test_worker_pool_bounds_concurrency(self, make_scheduler, add_video):
        first_id = await add_video()
        second_id = await add_video()
        scheduler = make_scheduler(sampler=StubSampler(delay=0.1), max_concurrent_scans=1)

        first, _ = await scheduler.request_scan(first_id)
        second, _ = await scheduler.request_scan(second_id)
        await asyncio.sleep(0.05)

        assert first.state == JobState.RUNNING
        assert second.state == JobState.QUEUED
        await first.wait(timeout=5)
        await second.wait(timeout=5)
        assert second.state == JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_cancel_scan(self, make_scheduler, session_factory, add_video):
        video_id = await add_video()
        scheduler = make_scheduler(sampler=StubSampler(timestamps=[float(t) for t in range(10)], delay=0.1))

        job, _ = await scheduler.request_scan(video_id)
        await asyncio.sleep(0.05)
        cancelled = await scheduler.cancel_scan(video_id)

        assert cancelled is True
        assert job.state == JobState.CANCELLED
        assert job.cancel_token.is_cancelled
        assert scheduler.get_job(video_id) is None
        assert await _status(session_factory, video_id) == ScanStatus.failed()
        assert await scheduler.cancel_scan(video_id) is False

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_jobs(self, make_scheduler, session_factory, add_video):
        ids = [await add_video() for _ in range(2)]
        scheduler = make_scheduler(sampler=StubSampler(timestamps=[float(t) for t in range(10)], delay=0.1))
        jobs = [(await scheduler.request_scan(video_id))[0] for video_id in ids]

        await asyncio.sleep(0.05)
        await scheduler.shutdown()

        assert all(job.state == JobState.CANCELLED for job in jobs)
        assert scheduler.active_jobs == []
        for video_id in ids:
            assert await _status(session_factory, video_id) == ScanStatus.failed()

    @pytest.mark.asyncio
    async def test_frames_saved_for_surfaces(self, make_scheduler, session_factory, add_video, tmp_path):
        video_id = await add_video()
        store = FrameStore(tmp_path / "frames")
        scheduler = make_scheduler(detector=StubDetector(DESK_AT_2S), frame_store=store)

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        surfaces = await _surfaces(session_factory, video_id)
        assert surfaces[0].frame_url == f"/video/{video_id}/frames/frame_2s.jpg"
        assert store.frame_path(video_id, "frame_2s.jpg").is_file()
        assert not store.frame_path(video_id, "frame_0s.jpg").exists()

    @pytest.mark.asyncio
    async def test_rescan_removes_previous_frames(self, make_scheduler, session_factory, add_video, tmp_path):
        video_id = await add_video()
        store = FrameStore(tmp_path / "frames")
        detector = StubDetector(DESK_AT_2S)
        scheduler = make_scheduler(detector=detector, frame_store=store)

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)
        assert store.frame_path(video_id, "frame_2s.jpg").is_file()

        detector.detections = {4.0: [detection("Wall", 0.7, 0.2, 0.2, 0.5, 0.5)]}
        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert not store.frame_path(video_id, "frame_2s.jpg").exists()
        assert store.frame_path(video_id, "frame_4s.jpg").is_file()
        surfaces = await _surfaces(session_factory, video_id)
        assert [s.frame_url for s in surfaces] == [f"/video/{video_id}/frames/frame_4s.jpg"]

    @pytest.mark.asyncio
    async def test_rescan_without_surfaces_removes_frames(self, make_scheduler, session_factory, add_video, tmp_path):
        video_id = await add_video()
        store = FrameStore(tmp_path / "frames")
        detector = StubDetector(DESK_AT_2S)
        scheduler = make_scheduler(detector=detector, frame_store=store)

        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        detector.detections = {}
        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert await _status(session_factory, video_id) == ScanStatus.from_count(0)
        assert list((tmp_path / "frames" / str(video_id)).iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_store_removes_written_frames(
        self, make_scheduler, session_factory, add_video, tmp_path, monkeypatch
    ):
        video_id = await add_video()
        store = FrameStore(tmp_path / "frames")
        scheduler = make_scheduler(detector=StubDetector(DESK_AT_2S), frame_store=store)

        async def broken_replace(self, *args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(ResultStore, "replace_surfaces", broken_replace)
        job, _ = await scheduler.request_scan(video_id)
        await job.wait(timeout=5)

        assert job.state == JobState.FAILED
        assert not store.frame_path(video_id, "frame_2s.jpg").exists()


class TestSchedulerConfig:
    def test_from_settings(self):
        from surfacescan.config import Settings

        config = SchedulerConfig.from_settings(
            Settings(scan_deadline_seconds=30, scan_max_retries=1, max_concurrent_scans=2)
        )
        assert config.deadline_seconds == 30
        assert config.max_retries == 1
        assert config.max_concurrent_scans == 2


class TestGlobalScheduler:
    """Tests for the global scheduler accessors."""

    def setup_method(self):
        reset_scan_scheduler()

    def teardown_method(self):
        reset_scan_scheduler()

    def test_get_scan_scheduler_singleton(self):
        assert get_scan_scheduler() is get_scan_scheduler()

    def test_reset_scan_scheduler(self):
        first = get_scan_scheduler()
        reset_scan_scheduler()
        assert get_scan_scheduler() is not first

    def test_build_from_settings(self):
        from surfacescan.config import Settings

        scheduler = build_scan_scheduler(Settings(max_concurrent_scans=3))
        assert scheduler.config.max_concurrent_scans == 3
