"""ML module for placement surface detection.

Provides the detector interface and its local (YOLO) and remote (vision
service) backends.
"""

from .allowlist import PlacementSurfaceAllowlist, canonical_label, filter_detections
from .base import BaseSurfaceDetector
from .factory import create_detector, get_detector
from .remote_detector import RemoteServiceDetector
from .types import BoundingBox, Frame, RawDetection
from .yolo_detector import LocalModelDetector

__all__ = [
    "BaseSurfaceDetector",
    "BoundingBox",
    "Frame",
    "LocalModelDetector",
    "PlacementSurfaceAllowlist",
    "RawDetection",
    "RemoteServiceDetector",
    "canonical_label",
    "create_detector",
    "filter_detections",
    "get_detector",
]
