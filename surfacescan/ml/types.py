import math
from dataclasses import dataclass

import numpy as np


def _clip(value: float) -> float:
    value = float(value)
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


@dataclass(frozen=True)
class BoundingBox:
    """Box in normalized [0, 1] frame coordinates (top-left corner + size)."""

    x: float
    y: float
    width: float
    height: float

    @property
    def x_center(self) -> float:
        return self.x + self.width / 2

    @property
    def y_center(self) -> float:
        return self.y + self.height / 2

    @property
    def area(self) -> float:
        return self.width * self.height

    def to_xyxy(self) -> tuple[float, float, float, float]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)

    @classmethod
    def from_xyxy(cls, x1: float, y1: float, x2: float, y2: float) -> "BoundingBox":
        return cls(x=x1, y=y1, width=x2 - x1, height=y2 - y1)

    @classmethod
    def from_pixels(
        cls, x1: float, y1: float, x2: float, y2: float, frame_width: int, frame_height: int
    ) -> "BoundingBox":
        """Build a clamped normalized box from pixel xyxy coordinates."""
        if frame_width <= 0 or frame_height <= 0:
            raise ValueError("Frame dimensions must be positive to normalize a box")
        return cls.from_xyxy(
            x1 / frame_width, y1 / frame_height, x2 / frame_width, y2 / frame_height
        ).clamped()

    def clamped(self) -> "BoundingBox":
        """Clamp to the unit square so that x+width <= 1 and y+height <= 1."""
        x1, y1, x2, y2 = self.to_xyxy()
        x1, x2 = sorted((_clip(x1), _clip(x2)))
        y1, y2 = sorted((_clip(y1), _clip(y2)))
        return BoundingBox(x=x1, y=y1, width=x2 - x1, height=y2 - y1)

    def iou(self, other: "BoundingBox") -> float:
        """Intersection-over-union with another box."""
        ax1, ay1, ax2, ay2 = self.to_xyxy()
        bx1, by1, bx2, by2 = other.to_xyxy()

        inter_w = max(0.0, min(ax2, bx2) - max(ax1, bx1))
        inter_h = max(0.0, min(ay2, by2) - max(ay1, by1))
        intersection = inter_w * inter_h
        union = self.area + other.area - intersection

        if union <= 0:
            return 0.0
        return intersection / union


@dataclass(frozen=True)
class RawDetection:
    """Single detector output with a normalized box."""

    label: str
    score: float
    bbox: BoundingBox


@dataclass
class Frame:
    """A sampled video frame."""

    timestamp: float  # seconds from video start
    image: np.ndarray

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])
