"""Placement surface allowlist and label filtering.

Detectors emit backend-specific labels ("dining table", "tv", "countertop").
Labels are mapped to a canonical surface type and only types present in the
allowlist survive.
"""

import math
from collections.abc import Iterable

from .types import RawDetection

DEFAULT_ALLOWLIST = frozenset(
    {
        "Desk",
        "Table",
        "Wall",
        "Monitor",
        "Laptop",
        "Bottle",
        "Shelf",
        "Counter",
        "Cup",
        "Book",
        "Keyboard",
        "Phone",
    }
)

# Backend label (lowercase) -> canonical surface type
LABEL_ALIASES = {
    "dining table": "Desk",
    "desk": "Desk",
    "table": "Table",
    "coffee table": "Table",
    "bench": "Table",
    "wall": "Wall",
    "tv": "Monitor",
    "tvmonitor": "Monitor",
    "monitor": "Monitor",
    "screen": "Monitor",
    "laptop": "Laptop",
    "bottle": "Bottle",
    "shelf": "Shelf",
    "bookshelf": "Shelf",
    "counter": "Counter",
    "countertop": "Counter",
    "cup": "Cup",
    "book": "Book",
    "keyboard": "Keyboard",
    "cell phone": "Phone",
    "phone": "Phone",
}


def canonical_label(label: str) -> str:
    """Map a backend label to its canonical surface type."""
    key = label.strip().lower().replace("_", " ")
    if key in LABEL_ALIASES:
        return LABEL_ALIASES[key]
    return key.title()


class PlacementSurfaceAllowlist:
    """Set of surface types eligible for brand placement."""

    def __init__(self, surface_types: Iterable[str] | None = None) -> None:
        types = DEFAULT_ALLOWLIST if surface_types is None else surface_types
        self._types = frozenset(canonical_label(t) for t in types)

    def __contains__(self, label: str) -> bool:
        return canonical_label(label) in self._types

    def __len__(self) -> int:
        return len(self._types)

    @property
    def surface_types(self) -> frozenset[str]:
        return self._types


def filter_detections(
    detections: Iterable[RawDetection],
    allowlist: PlacementSurfaceAllowlist,
    min_confidence: float,
) -> list[RawDetection]:
    """Drop non-allowlisted labels and low-confidence detections.

    Surviving detections carry their canonical label and a clamped box.
    """
    kept = []
    for detection in detections:
        if not math.isfinite(detection.score) or detection.score < min_confidence:
            continue
        label = canonical_label(detection.label)
        if label not in allowlist:
            continue
        kept.append(RawDetection(label=label, score=detection.score, bbox=detection.bbox.clamped()))
    return kept
