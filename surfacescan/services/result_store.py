"""Persistence of scan results and video scan status.

``ResultStore`` is the write/read contract used by the scheduler. The HTTP read
path goes through a ``SurfaceSource`` chosen explicitly from configuration:
``live`` reads the database, ``fixture`` serves bundled demo data.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from surfacescan.errors import VideoNotFound
from surfacescan.models.surface import DetectedSurface
from surfacescan.models.video import ScanState, ScanStatus, VideoAsset
from surfacescan.services.aggregator import AggregatedSurface

logger = logging.getLogger(__name__)

DEFAULT_FIXTURE_PATH = Path(__file__).resolve().parent.parent / "fixtures" / "demo_surfaces.json"


class ResultStore:
    """Reads and writes videos and their detected surfaces."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def get_video(self, video_id: int) -> VideoAsset | None:
        result = await self._db.execute(select(VideoAsset).where(VideoAsset.id == video_id))
        return result.scalar_one_or_none()

    async def require_video(self, video_id: int) -> VideoAsset:
        video = await self.get_video(video_id)
        if video is None:
            raise VideoNotFound(video_id)
        return video

    async def create_video(
        self,
        source_ref: str,
        title: str = "",
        priority_score: int = 0,
        duration_seconds: float | None = None,
    ) -> VideoAsset:
        video = VideoAsset(
            title=title,
            source_ref=source_ref,
            priority_score=priority_score,
            duration_seconds=duration_seconds,
            status=ScanStatus.pending().encode(),
        )
        self._db.add(video)
        await self._db.commit()
        await self._db.refresh(video)
        return video

    async def get_status(self, video_id: int) -> ScanStatus:
        video = await self.require_video(video_id)
        return video.scan_status

    async def set_status(self, video_id: int, status: ScanStatus) -> None:
        """Write a video's scan status in its own transaction."""
        await self._db.execute(
            update(VideoAsset)
            .where(VideoAsset.id == video_id)
            .values(status=status.encode(), updated_at=datetime.now(timezone.utc))
        )
        await self._db.commit()

    async def replace_surfaces(
        self,
        video_id: int,
        surfaces: Sequence[AggregatedSurface],
        duration_seconds: float | None = None,
    ) -> ScanStatus:
        """Atomically replace a video's surface set and flip it to a terminal status.

        Prior rows are deleted, the new rows inserted and the derived status
        written in a single transaction, so readers never see a mix of old and
        new results.

        Returns:
            The terminal status written (Ready(N) or NoSurfacesRetry).
        """
        try:
            video = await self.require_video(video_id)
            await self._db.execute(delete(DetectedSurface).where(DetectedSurface.video_id == video_id))
            self._db.add_all(DetectedSurface.from_aggregated(s) for s in surfaces)

            status = ScanStatus.from_count(len(surfaces))
            video.status = status.encode()
            if duration_seconds is not None:
                video.duration_seconds = duration_seconds

            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        logger.info(f"Video {video_id}: stored {len(surfaces)} surfaces, status {status}")
        return status

    async def get_surfaces(self, video_id: int) -> list[DetectedSurface]:
        """All stored surfaces for a video in chronological order."""
        result = await self._db.execute(
            select(DetectedSurface)
            .where(DetectedSurface.video_id == video_id)
            .order_by(DetectedSurface.timestamp, DetectedSurface.id)
        )
        return list(result.scalars().all())

    async def count_surfaces(self, video_id: int) -> int:
        result = await self._db.execute(
            select(func.count()).select_from(DetectedSurface).where(DetectedSurface.video_id == video_id)
        )
        return result.scalar_one()

    async def get_pending_videos(self, limit: int) -> list[VideoAsset]:
        """Videos awaiting a scan, highest priority first."""
        result = await self._db.execute(
            select(VideoAsset)
            .where(VideoAsset.status == ScanStatus.pending().encode())
            .order_by(VideoAsset.priority_score.desc(), VideoAsset.id)
            .limit(limit)
        )
        return list(result.scalars().all())


class DataSource(str, Enum):
    """Where the read path gets its data from."""

    LIVE = "live"
    FIXTURE = "fixture"


class SurfaceSource(ABC):
    """Read-only view used by pollers and the HTTP layer."""

    @abstractmethod
    async def get_video(self, video_id: int) -> VideoAsset:
        """Raises VideoNotFound for unknown ids."""

    @abstractmethod
    async def list_surfaces(self, video_id: int) -> list[DetectedSurface]:
        """Surfaces visible for a video; empty unless its status is Ready."""


class LiveSurfaceSource(SurfaceSource):
    def __init__(self, session: AsyncSession) -> None:
        self._store = ResultStore(session)

    async def get_video(self, video_id: int) -> VideoAsset:
        return await self._store.require_video(video_id)

    async def list_surfaces(self, video_id: int) -> list[DetectedSurface]:
        video = await self._store.require_video(video_id)
        if video.scan_status.state != ScanState.READY:
            return []
        return await self._store.get_surfaces(video_id)


class FixtureSurfaceSource(SurfaceSource):
    """Serves videos and surfaces from a JSON fixture file."""

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else DEFAULT_FIXTURE_PATH
        self._videos: dict[int, VideoAsset] | None = None

    def _load(self) -> dict[int, VideoAsset]:
        if self._videos is not None:
            return self._videos

        with open(self._path, encoding="utf-8") as f:
            data = json.load(f)

        videos = {}
        for entry in data.get("videos", []):
            video = VideoAsset(
                id=int(entry["id"]),
                title=entry.get("title", ""),
                source_ref=entry.get("sourceRef", ""),
                duration_seconds=entry.get("durationSeconds"),
                status=entry.get("status", ScanStatus.pending().encode()),
                priority_score=int(entry.get("priorityScore", 0)),
                created_at=datetime.now(timezone.utc),
            )
            video.surfaces = [
                self._surface_from_entry(video.id, index, s)
                for index, s in enumerate(entry.get("surfaces", []), start=1)
            ]
            videos[video.id] = video

        logger.info(f"Loaded {len(videos)} fixture videos from {self._path}")
        self._videos = videos
        return videos

    @staticmethod
    def _surface_from_entry(video_id: int, index: int, entry: dict[str, Any]) -> DetectedSurface:
        box = entry["boundingBox"]
        return DetectedSurface(
            id=video_id * 1000 + index,
            video_id=video_id,
            timestamp=float(entry["timestamp"]),
            surface_type=entry["surfaceType"],
            confidence=float(entry["confidence"]),
            bounding_box_x=float(box["x"]),
            bounding_box_y=float(box["y"]),
            bounding_box_width=float(box["width"]),
            bounding_box_height=float(box["height"]),
            frame_url=entry.get("frameUrl"),
            created_at=datetime.now(timezone.utc),
        )

    async def get_video(self, video_id: int) -> VideoAsset:
        video = self._load().get(video_id)
        if video is None:
            raise VideoNotFound(video_id)
        return video

    async def list_surfaces(self, video_id: int) -> list[DetectedSurface]:
        video = await self.get_video(video_id)
        if video.scan_status.state != ScanState.READY:
            return []
        return sorted(video.surfaces, key=lambda s: (s.timestamp, s.id))


def make_surface_source(
    data_source: DataSource | str,
    session: AsyncSession | None = None,
    fixture_path: str | Path | None = None,
) -> SurfaceSource:
    """Build the read-path source for an explicit data source selection."""
    data_source = DataSource(data_source)
    if data_source == DataSource.FIXTURE:
        return FixtureSurfaceSource(fixture_path)
    if session is None:
        raise ValueError("A database session is required for the live data source")
    return LiveSurfaceSource(session)
