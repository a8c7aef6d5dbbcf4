"""Database models."""

from surfacescan.models.surface import DetectedSurface
from surfacescan.models.video import ScanState, ScanStatus, VideoAsset

__all__ = [
    "DetectedSurface",
    "ScanState",
    "ScanStatus",
    "VideoAsset",
]
