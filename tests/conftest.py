"""Pytest configuration and fixtures for surface scan tests."""

import asyncio
import os

# Keep the module-level engine off disk and frame writes off for the whole run
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SAVE_FRAMES", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from stubs import StubDetector, StubSampler
from surfacescan.api.videos import get_settings
from surfacescan.config import Settings
from surfacescan.database import create_engine, get_db, init_db
from surfacescan.main import app
from surfacescan.services.result_store import ResultStore
from surfacescan.services.scan_scheduler import ScanScheduler, SchedulerConfig, get_scan_scheduler


def _make_engine(tmp_path) -> AsyncEngine:
    # NullPool: connections are never reused across event loops
    return create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)


def _session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def engine(tmp_path):
    """Per-test SQLite file database with all tables created."""
    test_engine = _make_engine(tmp_path)
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return _session_maker(engine)


@pytest.fixture
async def db_session(session_factory):
    """Provide a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def add_video(session_factory):
    """Create a video and return its id."""

    async def _add(source_ref: str = "/videos/clip.mp4", priority_score: int = 0, title: str = "") -> int:
        async with session_factory() as session:
            video = await ResultStore(session).create_video(
                source_ref, title=title, priority_score=priority_score
            )
            return video.id

    return _add


@pytest.fixture
def make_scheduler(session_factory):
    """Build a scheduler over stub components with fast retries."""

    def _make(sampler=None, detector=None, frame_store=None, **config) -> ScanScheduler:
        detector = detector or StubDetector()
        options = {"retry_backoff_seconds": 0.01, **config}
        return ScanScheduler(
            session_factory=session_factory,
            sampler=sampler or StubSampler(),
            detector_factory=lambda: detector,
            frame_store=frame_store,
            config=SchedulerConfig(**options),
        )

    return _make


@pytest.fixture
def sync_engine(tmp_path):
    """Engine for synchronous tests (TestClient, CliRunner)."""
    test_engine = _make_engine(tmp_path)
    asyncio.run(init_db(test_engine))
    yield test_engine
    asyncio.run(test_engine.dispose())


@pytest.fixture
def sync_session_factory(sync_engine):
    return _session_maker(sync_engine)


@pytest.fixture
def api_settings(tmp_path) -> Settings:
    return Settings(data_source="live", frame_storage_path=str(tmp_path / "frames"), save_frames=False)


@pytest.fixture
def api_scheduler(sync_session_factory):
    """Scheduler used by the API; tests may replace its detector via ``.detector``."""
    detector = StubDetector()
    scheduler = ScanScheduler(
        session_factory=sync_session_factory,
        sampler=StubSampler(),
        detector_factory=lambda: scheduler.detector,
        config=SchedulerConfig(retry_backoff_seconds=0.01, deadline_seconds=5.0),
    )
    scheduler.detector = detector
    return scheduler


@pytest.fixture
def client(sync_engine, sync_session_factory, api_scheduler, api_settings, monkeypatch):
    """TestClient wired to the per-test database and stub scheduler."""
    monkeypatch.setattr("surfacescan.main.init_db", lambda: init_db(sync_engine))

    async def _get_test_db():
        async with sync_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_scan_scheduler] = lambda: api_scheduler
    app.dependency_overrides[get_settings] = lambda: api_settings

    with TestClient(app) as test_client:
        yield test_client
        test_client.portal.call(api_scheduler.shutdown)

    app.dependency_overrides.clear()
