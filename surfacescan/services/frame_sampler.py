"""Video frame sampling service using OpenCV."""

import logging
import math
import shutil
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from urllib.parse import urlparse

import cv2
import httpx
import numpy as np

from surfacescan.errors import SourceUnavailable, UnsupportedFormat
from surfacescan.ml.types import Frame

logger = logging.getLogger(__name__)


@dataclass
class VideoMetadata:
    """Metadata about a video file."""

    total_frames: int
    fps: float
    width: int
    height: int
    duration_seconds: float

    @property
    def frame_duration_ms(self) -> float:
        """Duration of a single frame in milliseconds."""
        return 1000.0 / self.fps if self.fps > 0 else 0.0


def is_remote_ref(video_ref: str | Path) -> bool:
    return urlparse(str(video_ref)).scheme in ("http", "https")


def plan_timestamps(duration_seconds: float, rate_seconds: float, max_frames: int) -> list[float]:
    """Timestamps to sample for a video.

    Frames are taken every ``rate_seconds`` from the start. When that would
    exceed ``max_frames``, the interval is stretched so the capped frames still
    span the whole video.
    """
    if rate_seconds <= 0:
        raise ValueError("rate_seconds must be positive")
    if max_frames < 1 or duration_seconds <= 0:
        return []

    count = math.ceil(duration_seconds / rate_seconds)
    interval = rate_seconds
    if count > max_frames:
        count = max_frames
        interval = duration_seconds / max_frames

    return [round(i * interval, 3) for i in range(count)]


class FrameSampler:
    """Produces (timestamp, image) frames at a fixed interval.

    Each ``sample`` call opens its own capture, so iterations are independent
    and can be restarted freely. Remote references are downloaded to a
    temporary directory that is removed when the iteration ends.
    """

    def __init__(
        self,
        rate_seconds: float = 2.0,
        max_frames: int = 60,
        max_dimension: int = 640,
        download_timeout_seconds: float = 60.0,
        min_free_disk_mb: int = 100,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the frame sampler.

        Args:
            rate_seconds: Default seconds between sampled frames.
            max_frames: Cap on frames sampled from a single video.
            max_dimension: Longest edge of returned frames (larger frames are downscaled).
            download_timeout_seconds: Timeout for downloading remote videos.
            min_free_disk_mb: Free space the temp directory must have before a download starts.
            client: Optional HTTP client used for remote downloads.
        """
        if max_frames < 1:
            raise ValueError("max_frames must be at least 1")
        self._rate_seconds = rate_seconds
        self._max_frames = max_frames
        self._max_dimension = max_dimension
        self._download_timeout = download_timeout_seconds
        self._min_free_disk_mb = min_free_disk_mb
        self._client = client

    @property
    def max_frames(self) -> int:
        return self._max_frames

    def sample(
        self,
        video_ref: str | Path,
        rate_seconds: float | None = None,
        on_metadata: Callable[[VideoMetadata], None] | None = None,
    ) -> Iterator[Frame]:
        """Sample frames from start to end of a video (generator).

        Args:
            video_ref: Local file path or http(s) URL.
            rate_seconds: Seconds between frames (defaults to the sampler's rate).
            on_metadata: Called once with the video metadata, before the first
                frame. Containers that report no frame count are read in order
                and the callback gets the measured duration after the last frame.

        Yields:
            Frame for each sampled timestamp that could be decoded.

        Raises:
            SourceUnavailable: If the byte source cannot be opened.
            UnsupportedFormat: If the container or codec cannot be decoded.
        """
        rate = rate_seconds if rate_seconds is not None else self._rate_seconds
        if rate <= 0:
            raise ValueError("rate_seconds must be positive")

        with self._local_copy(video_ref) as path:
            cap = cv2.VideoCapture(str(path))
            try:
                if not cap.isOpened():
                    raise UnsupportedFormat(f"Failed to decode video: {video_ref}")

                metadata = self._read_metadata(cap)
                if metadata.total_frames <= 0:
                    logger.info(f"No frame count reported for {video_ref}, reading frames in order")
                    yield from self._sample_sequential(cap, metadata, rate, video_ref, on_metadata)
                    return

                if on_metadata is not None:
                    on_metadata(metadata)

                timestamps = plan_timestamps(metadata.duration_seconds, rate, self._max_frames)
                logger.debug(
                    f"Sampling {len(timestamps)} frames from {metadata.duration_seconds:.1f}s video"
                )

                decoded = 0
                for timestamp in timestamps:
                    frame_number = min(int(timestamp * metadata.fps), metadata.total_frames - 1)
                    cap.set(cv2.CAP_PROP_POS_FRAMES, frame_number)
                    ret, image = cap.read()

                    if not ret or image is None:
                        # Skip failed frames rather than raising
                        continue

                    decoded += 1
                    yield Frame(timestamp=timestamp, image=self._downscale(image))

                if timestamps and decoded == 0:
                    raise UnsupportedFormat(f"No decodable frames in video: {video_ref}")
            finally:
                cap.release()

    def _sample_sequential(
        self,
        cap: cv2.VideoCapture,
        metadata: VideoMetadata,
        rate: float,
        video_ref: str | Path,
        on_metadata: Callable[[VideoMetadata], None] | None,
    ) -> Iterator[Frame]:
        """Take every ``rate * fps``-th frame of a stream without seeking."""
        step = max(1, round(rate * metadata.fps))
        index = 0
        sampled = 0

        while True:
            if index % step == 0 and sampled < self._max_frames:
                ret, image = cap.read()
                if not ret or image is None:
                    break
                sampled += 1
                yield Frame(timestamp=round(index / metadata.fps, 3), image=self._downscale(image))
            elif not cap.grab():
                break
            index += 1

        if sampled == 0:
            raise UnsupportedFormat(f"No decodable frames in video: {video_ref}")

        if on_metadata is not None:
            on_metadata(replace(metadata, total_frames=index, duration_seconds=index / metadata.fps))

    def get_metadata(self, video_ref: str | Path) -> VideoMetadata:
        """Read video metadata without sampling frames."""
        with self._local_copy(video_ref) as path:
            cap = cv2.VideoCapture(str(path))
            try:
                if not cap.isOpened():
                    raise UnsupportedFormat(f"Failed to decode video: {video_ref}")
                return self._read_metadata(cap)
            finally:
                cap.release()

    @staticmethod
    def _read_metadata(cap: cv2.VideoCapture) -> VideoMetadata:
        total_frames = max(int(cap.get(cv2.CAP_PROP_FRAME_COUNT)), 0)
        fps = cap.get(cv2.CAP_PROP_FPS)
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

        if fps <= 0:
            fps = 30.0  # Default fallback

        return VideoMetadata(
            total_frames=total_frames,
            fps=fps,
            width=width,
            height=height,
            duration_seconds=total_frames / fps,
        )

    def _downscale(self, image: np.ndarray) -> np.ndarray:
        height, width = image.shape[:2]
        longest = max(height, width)
        if longest <= self._max_dimension:
            return image
        scale = self._max_dimension / longest
        size = (max(1, int(width * scale)), max(1, int(height * scale)))
        return cv2.resize(image, size, interpolation=cv2.INTER_AREA)

    @contextmanager
    def _local_copy(self, video_ref: str | Path) -> Iterator[Path]:
        """Yield a local path for the video, downloading remote references."""
        if not is_remote_ref(video_ref):
            path = Path(video_ref)
            if not path.is_file():
                raise SourceUnavailable(f"Video file not found: {video_ref}")
            yield path
            return

        self._check_free_space(tempfile.gettempdir())
        with tempfile.TemporaryDirectory(prefix="surfacescan-") as tmpdir:
            suffix = Path(urlparse(str(video_ref)).path).suffix or ".mp4"
            target = Path(tmpdir) / f"source{suffix}"
            self._download(str(video_ref), target)
            yield target

    def _check_free_space(self, directory: str) -> None:
        free_mb = shutil.disk_usage(directory).free // (1024 * 1024)
        if free_mb < self._min_free_disk_mb:
            raise SourceUnavailable(
                f"Insufficient disk space: {free_mb}MB available, {self._min_free_disk_mb}MB required"
            )

    def _download(self, url: str, target: Path) -> None:
        client = self._client or httpx.Client(timeout=self._download_timeout, follow_redirects=True)
        try:
            with client.stream("GET", url) as response:
                if not response.is_success:
                    raise SourceUnavailable(f"Failed to download video ({response.status_code}): {url}")
                with open(target, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"Failed to download video {url}: {e}") from e
        finally:
            if self._client is None:
                client.close()

        logger.info(f"Downloaded {target.stat().st_size / 1024 / 1024:.1f}MB from {url}")
