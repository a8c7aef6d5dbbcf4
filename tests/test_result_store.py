"""Tests for result persistence and the read-path data sources."""

import json

import pytest

from surfacescan.errors import VideoNotFound
from surfacescan.ml.types import BoundingBox
from surfacescan.models.video import ScanState, ScanStatus
from surfacescan.services.aggregator import AggregatedSurface
from surfacescan.services.result_store import (
    DataSource,
    FixtureSurfaceSource,
    LiveSurfaceSource,
    ResultStore,
    make_surface_source,
)


def _surface(video_id: int, timestamp: float, surface_type: str = "Desk", confidence: float = 0.8):
    return AggregatedSurface(
        video_id=video_id,
        timestamp=timestamp,
        surface_type=surface_type,
        confidence=confidence,
        bbox=BoundingBox(x=0.1, y=0.5, width=0.4, height=0.3),
    )


class TestResultStore:
    """Tests for ResultStore against a SQLite database."""

    @pytest.mark.asyncio
    async def test_create_video_is_pending(self, db_session):
        video = await ResultStore(db_session).create_video("/videos/a.mp4", title="A", priority_score=5)
        assert video.id is not None
        assert video.scan_status == ScanStatus.pending()
        assert video.priority_score == 5

    @pytest.mark.asyncio
    async def test_require_missing_video(self, db_session):
        with pytest.raises(VideoNotFound) as exc_info:
            await ResultStore(db_session).require_video(999)
        assert exc_info.value.video_id == 999
        assert "999" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_set_and_get_status(self, db_session, add_video):
        video_id = await add_video()
        store = ResultStore(db_session)
        await store.set_status(video_id, ScanStatus.scanning())
        assert await store.get_status(video_id) == ScanStatus.scanning()

    @pytest.mark.asyncio
    async def test_replace_surfaces_sets_ready(self, session_factory, add_video):
        video_id = await add_video()

        async with session_factory() as session:
            status = await ResultStore(session).replace_surfaces(
                video_id, [_surface(video_id, 6.0), _surface(video_id, 2.0, "Wall")], duration_seconds=30.0
            )

        assert status == ScanStatus.from_count(2)
        async with session_factory() as session:
            store = ResultStore(session)
            video = await store.require_video(video_id)
            assert video.status == "Ready (2 Spots)"
            assert video.duration_seconds == 30.0
            surfaces = await store.get_surfaces(video_id)
            assert [s.timestamp for s in surfaces] == [2.0, 6.0]
            assert await store.count_surfaces(video_id) == 2

    @pytest.mark.asyncio
    async def test_replace_supersedes_previous_rows(self, session_factory, add_video):
        video_id = await add_video()
        async with session_factory() as session:
            await ResultStore(session).replace_surfaces(video_id, [_surface(video_id, 1.0), _surface(video_id, 3.0)])
        async with session_factory() as session:
            first_ids = {s.id for s in await ResultStore(session).get_surfaces(video_id)}

        async with session_factory() as session:
            await ResultStore(session).replace_surfaces(video_id, [_surface(video_id, 8.0, "Monitor")])

        async with session_factory() as session:
            store = ResultStore(session)
            surfaces = await store.get_surfaces(video_id)
            assert [s.surface_type for s in surfaces] == ["Monitor"]
            assert not first_ids & {s.id for s in surfaces}
            assert await store.get_status(video_id) == ScanStatus.from_count(1)

    @pytest.mark.asyncio
    async def test_replace_with_nothing_is_no_surfaces_retry(self, session_factory, add_video):
        video_id = await add_video()
        async with session_factory() as session:
            status = await ResultStore(session).replace_surfaces(video_id, [])
        assert status.state == ScanState.NO_SURFACES_RETRY

    @pytest.mark.asyncio
    async def test_replace_unknown_video(self, db_session):
        with pytest.raises(VideoNotFound):
            await ResultStore(db_session).replace_surfaces(42, [_surface(42, 1.0)])

    @pytest.mark.asyncio
    async def test_pending_videos_by_priority(self, session_factory, add_video):
        low = await add_video(priority_score=1)
        high = await add_video(priority_score=10)
        mid = await add_video(priority_score=5)
        scanned = await add_video(priority_score=100)
        async with session_factory() as session:
            await ResultStore(session).set_status(scanned, ScanStatus.from_count(0))

        async with session_factory() as session:
            pending = await ResultStore(session).get_pending_videos(limit=2)

        assert [v.id for v in pending] == [high, mid]
        assert low not in [v.id for v in pending]


class TestLiveSurfaceSource:
    @pytest.mark.asyncio
    async def test_surfaces_hidden_until_ready(self, session_factory, add_video):
        video_id = await add_video()
        async with session_factory() as session:
            await ResultStore(session).replace_surfaces(video_id, [_surface(video_id, 2.0)])
            await ResultStore(session).set_status(video_id, ScanStatus.scanning())

        async with session_factory() as session:
            assert await LiveSurfaceSource(session).list_surfaces(video_id) == []

        async with session_factory() as session:
            await ResultStore(session).set_status(video_id, ScanStatus.from_count(1))
        async with session_factory() as session:
            assert len(await LiveSurfaceSource(session).list_surfaces(video_id)) == 1

    @pytest.mark.asyncio
    async def test_unknown_video(self, db_session):
        with pytest.raises(VideoNotFound):
            await LiveSurfaceSource(db_session).list_surfaces(5)


class TestFixtureSurfaceSource:
    @pytest.mark.asyncio
    async def test_bundled_fixture(self):
        source = FixtureSurfaceSource()
        video = await source.get_video(1)
        surfaces = await source.list_surfaces(1)

        assert video.scan_status == ScanStatus.from_count(3)
        assert [s.timestamp for s in surfaces] == sorted(s.timestamp for s in surfaces)
        assert len(surfaces) == 3
        assert await source.list_surfaces(3) == []

    @pytest.mark.asyncio
    async def test_custom_fixture_file(self, tmp_path):
        path = tmp_path / "fixture.json"
        path.write_text(
            json.dumps(
                {
                    "videos": [
                        {
                            "id": 9,
                            "sourceRef": "/v.mp4",
                            "status": "Ready (1 Spots)",
                            "surfaces": [
                                {
                                    "timestamp": 3.0,
                                    "surfaceType": "Shelf",
                                    "confidence": 0.7,
                                    "boundingBox": {"x": 0.1, "y": 0.1, "width": 0.2, "height": 0.2},
                                }
                            ],
                        }
                    ]
                }
            )
        )
        source = make_surface_source(DataSource.FIXTURE, fixture_path=path)

        surfaces = await source.list_surfaces(9)
        assert surfaces[0].surface_type == "Shelf"
        assert surfaces[0].id == 9001
        with pytest.raises(VideoNotFound):
            await source.get_video(1)

    def test_live_source_requires_session(self):
        with pytest.raises(ValueError):
            make_surface_source("live")
