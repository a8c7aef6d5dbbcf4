"""Stores frame images for frames that produced surfaces."""

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import replace
from pathlib import Path

import cv2

from surfacescan.ml.types import Frame
from surfacescan.services.aggregator import AggregatedSurface

logger = logging.getLogger(__name__)

_FRAME_NAME = re.compile(r"^frame_\d+(\.\d+)?s\.jpg$")


def frame_filename(timestamp: float) -> str:
    seconds = f"{timestamp:.3f}".rstrip("0").rstrip(".")
    return f"frame_{seconds}s.jpg"


def is_frame_filename(name: str) -> bool:
    return bool(_FRAME_NAME.match(name))


class FrameStore:
    """Writes JPEG frames under ``<root>/<video_id>/`` and returns their URLs."""

    def __init__(self, root: str | Path, jpeg_quality: int = 70) -> None:
        self._root = Path(root)
        self._jpeg_quality = jpeg_quality

    def frame_path(self, video_id: int, filename: str) -> Path:
        return self._root / str(video_id) / filename

    @staticmethod
    def frame_url(video_id: int, filename: str) -> str:
        return f"/video/{video_id}/frames/{filename}"

    def attach_frames(
        self,
        video_id: int,
        surfaces: Sequence[AggregatedSurface],
        frames: Iterable[Frame],
    ) -> list[AggregatedSurface]:
        """Save the frames referenced by ``surfaces`` and set their frame URLs.

        Surfaces whose frame cannot be written keep ``frame_url=None``.
        """
        by_timestamp = {frame.timestamp: frame for frame in frames}
        video_dir = self._root / str(video_id)
        video_dir.mkdir(parents=True, exist_ok=True)

        saved: dict[float, str] = {}
        result = []
        for surface in surfaces:
            url = saved.get(surface.timestamp)
            frame = by_timestamp.get(surface.timestamp)
            if url is None and frame is not None:
                filename = frame_filename(frame.timestamp)
                ok = cv2.imwrite(
                    str(video_dir / filename),
                    frame.image,
                    [cv2.IMWRITE_JPEG_QUALITY, self._jpeg_quality],
                )
                if ok:
                    url = self.frame_url(video_id, filename)
                    saved[surface.timestamp] = url
                else:
                    logger.warning(f"Video {video_id}: failed to save frame at {frame.timestamp}s")
            result.append(replace(surface, frame_url=url))

        return result

    def prune_frames(self, video_id: int, keep: Iterable[str | None] = ()) -> int:
        """Delete stored frames of a video that no surface URL in ``keep`` points to.

        Returns:
            Number of files removed.
        """
        video_dir = self._root / str(video_id)
        if not video_dir.is_dir():
            return 0

        kept = {url.rsplit("/", 1)[-1] for url in keep if url}
        removed = 0
        for path in video_dir.iterdir():
            if path.is_file() and is_frame_filename(path.name) and path.name not in kept:
                path.unlink(missing_ok=True)
                removed += 1

        if removed:
            logger.debug(f"Video {video_id}: removed {removed} stale frame images")
        return removed
