"""Client-side polling of scan status.

The pipeline keeps no per-client state; a poller only reads the video status
at a fixed interval until it is terminal, then reads the surface list once.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from surfacescan.config import Settings, settings
from surfacescan.errors import ServiceError, VideoNotFound
from surfacescan.models.video import ScanStatus
from surfacescan.schemas.video import DetectedSurface, SurfaceList
from surfacescan.services.result_store import LiveSurfaceSource, ResultStore

logger = logging.getLogger(__name__)


class StatusReader(ABC):
    """Read side of the poll contract."""

    @abstractmethod
    async def read_status(self, video_id: int) -> ScanStatus:
        """Current scan status of a video.

        Raises:
            VideoNotFound: If the video does not exist.
            ServiceError: If the status could not be read this time.
        """

    @abstractmethod
    async def read_surfaces(self, video_id: int) -> list[DetectedSurface]:
        """Visible surfaces of a video."""


class StoreStatusReader(StatusReader):
    """Reads straight from the database, for in-process callers like the CLI."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def read_status(self, video_id: int) -> ScanStatus:
        async with self._session_factory() as session:
            return await ResultStore(session).get_status(video_id)

    async def read_surfaces(self, video_id: int) -> list[DetectedSurface]:
        async with self._session_factory() as session:
            rows = await LiveSurfaceSource(session).list_surfaces(video_id)
            return [DetectedSurface.from_model(row) for row in rows]


class HttpStatusReader(StatusReader):
    """Reads through the HTTP API of a running server."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)

    async def _get(self, video_id: int, path: str) -> Any:
        try:
            response = await self._client.get(path)
        except httpx.HTTPError as e:
            raise ServiceError(f"Request to {path} failed: {e}") from e

        if response.status_code == 404:
            raise VideoNotFound(video_id)
        if response.is_error:
            raise ServiceError(f"{path} returned HTTP {response.status_code}")
        return response.json()

    async def read_status(self, video_id: int) -> ScanStatus:
        data = await self._get(video_id, f"/video/{video_id}")
        return ScanStatus.parse(data["status"])

    async def read_surfaces(self, video_id: int) -> list[DetectedSurface]:
        data = await self._get(video_id, f"/video/{video_id}/surfaces")
        return SurfaceList.model_validate(data).surfaces

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpStatusReader":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


@dataclass
class PollOutcome:
    """Result of polling a video until it settled or the poller gave up."""

    video_id: int
    status: ScanStatus | None
    polls: int
    surfaces: list[DetectedSurface] = field(default_factory=list)
    timed_out: bool = False
    cancelled: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status is not None and self.status.is_terminal


class ScanPoller:
    """Polls a video's status at a fixed interval with a bounded number of reads.

    At most ``ceil(timeout / interval) + 1`` status reads are made. ``cancel()``
    stops a running ``wait_for_terminal`` at its next wait.
    """

    def __init__(
        self,
        reader: StatusReader,
        interval_seconds: float = 3.0,
        timeout_seconds: float = 135.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if timeout_seconds < 0:
            raise ValueError("timeout_seconds cannot be negative")
        self._reader = reader
        self._interval = interval_seconds
        self._timeout = timeout_seconds
        self._cancelled = asyncio.Event()

    @classmethod
    def from_settings(cls, reader: StatusReader, config: Settings | None = None) -> "ScanPoller":
        """Poller that gives up after the job deadline plus the configured margin."""
        config = config or settings
        return cls(
            reader,
            interval_seconds=config.poll_interval_seconds,
            timeout_seconds=config.scan_deadline_seconds + config.poll_margin_seconds,
        )

    @property
    def max_polls(self) -> int:
        return math.ceil(self._timeout / self._interval) + 1

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def wait_for_terminal(self, video_id: int) -> PollOutcome:
        """Poll until the video reaches a terminal status.

        Raises:
            VideoNotFound: If the video does not exist.
        """
        status: ScanStatus | None = None
        polls = 0

        while polls < self.max_polls:
            if self.is_cancelled:
                return PollOutcome(video_id, status, polls, cancelled=True)

            polls += 1
            try:
                status = await self._reader.read_status(video_id)
            except ServiceError as e:
                logger.warning(f"Poll {polls}/{self.max_polls} for video {video_id} failed: {e}")
            else:
                logger.debug(f"Poll {polls}/{self.max_polls}: video {video_id} is {status}")
                if status.is_terminal:
                    surfaces = await self._reader.read_surfaces(video_id)
                    return PollOutcome(video_id, status, polls, surfaces=surfaces)

            if polls >= self.max_polls:
                break
            try:
                await asyncio.wait_for(self._cancelled.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

        if self.is_cancelled:
            return PollOutcome(video_id, status, polls, cancelled=True)

        logger.info(f"Gave up on video {video_id} after {polls} polls, last status {status}")
        return PollOutcome(video_id, status, polls, timed_out=True)
