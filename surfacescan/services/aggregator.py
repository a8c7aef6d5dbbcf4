"""Merges per-frame detections into the canonical surface list of a video."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from surfacescan.ml.types import BoundingBox, Frame, RawDetection

logger = logging.getLogger(__name__)


@dataclass
class AggregatorConfig:
    """Deduplication thresholds."""

    window_seconds: float = 5.0  # max gap between detections of the same surface
    iou_threshold: float = 0.5  # overlap above which two boxes are the same surface


@dataclass(frozen=True)
class AggregatedSurface:
    """A surface that survived deduplication, ready to be persisted."""

    video_id: int
    timestamp: float
    surface_type: str
    confidence: float
    bbox: BoundingBox
    frame_url: str | None = None


@dataclass
class _Cluster:
    best: AggregatedSurface
    last_timestamp: float
    last_bbox: BoundingBox


class ResultAggregator:
    """Deduplicates near-identical detections across adjacent frames.

    Candidates are processed in timestamp order. A candidate joins an existing
    cluster of the same surface type when it lies within the time window of the
    cluster's most recent member and its box overlaps that member's box above
    the IoU threshold. Each cluster is reported once, by its highest-confidence
    member (earliest wins on ties).
    """

    def __init__(self, config: AggregatorConfig | None = None) -> None:
        self._config = config or AggregatorConfig()

    @property
    def config(self) -> AggregatorConfig:
        return self._config

    def aggregate(
        self,
        video_id: int,
        frame_results: Iterable[tuple[Frame, list[RawDetection]]],
    ) -> list[AggregatedSurface]:
        """Build the deduplicated surface list for a video.

        Args:
            video_id: Video the detections belong to.
            frame_results: (frame, detections) pairs; detections are already
                allowlisted and thresholded.

        Returns:
            Surfaces sorted by timestamp ascending. Empty when nothing survived.
        """
        candidates = [
            AggregatedSurface(
                video_id=video_id,
                timestamp=frame.timestamp,
                surface_type=detection.label,
                confidence=detection.score,
                bbox=detection.bbox.clamped(),
            )
            for frame, detections in frame_results
            for detection in detections
        ]
        candidates.sort(key=lambda c: (c.timestamp, -c.confidence))

        clusters: list[_Cluster] = []
        for candidate in candidates:
            cluster = self._find_cluster(clusters, candidate)
            if cluster is None:
                clusters.append(
                    _Cluster(
                        best=candidate,
                        last_timestamp=candidate.timestamp,
                        last_bbox=candidate.bbox,
                    )
                )
                continue

            cluster.last_timestamp = candidate.timestamp
            cluster.last_bbox = candidate.bbox
            if candidate.confidence > cluster.best.confidence:
                cluster.best = candidate

        surfaces = sorted(
            (c.best for c in clusters),
            key=lambda s: (s.timestamp, s.surface_type, -s.confidence),
        )
        logger.debug(
            f"Video {video_id}: {len(candidates)} candidates merged into {len(surfaces)} surfaces"
        )
        return surfaces

    def _find_cluster(self, clusters: list[_Cluster], candidate: AggregatedSurface) -> _Cluster | None:
        best_match: _Cluster | None = None
        best_iou = self._config.iou_threshold

        for cluster in clusters:
            if cluster.best.surface_type != candidate.surface_type:
                continue
            if candidate.timestamp - cluster.last_timestamp > self._config.window_seconds:
                continue
            overlap = cluster.last_bbox.iou(candidate.bbox)
            if overlap > best_iou:
                best_match = cluster
                best_iou = overlap

        return best_match
