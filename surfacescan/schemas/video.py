"""Video and surface schemas for API requests and responses.

Field names are camelCase on the wire and snake_case in Python.
"""

import datetime as dt

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from surfacescan.models.surface import DetectedSurface as DetectedSurfaceModel


class CamelModel(BaseModel):
    """Base schema serialised with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class BoundingBox(CamelModel):
    """Normalized bounding box, all values relative to the frame (0-1)."""

    x: float = Field(ge=0, le=1, description="Left edge")
    y: float = Field(ge=0, le=1, description="Top edge")
    width: float = Field(ge=0, le=1, description="Box width")
    height: float = Field(ge=0, le=1, description="Box height")


class DetectedSurface(CamelModel):
    """A placement surface found in a video."""

    id: int
    video_id: int
    timestamp: float = Field(description="Seconds into the video")
    surface_type: str = Field(description="Surface type, e.g. Desk, Wall, Monitor")
    confidence: float = Field(ge=0, le=1)
    bounding_box: BoundingBox
    frame_url: str | None = Field(None, description="URL of the frame image, if stored")
    created_at: dt.datetime | None = None

    @classmethod
    def from_model(cls, surface: DetectedSurfaceModel) -> "DetectedSurface":
        return cls(
            id=surface.id,
            video_id=surface.video_id,
            timestamp=surface.timestamp,
            surface_type=surface.surface_type,
            confidence=surface.confidence,
            bounding_box=BoundingBox(
                x=surface.bounding_box_x,
                y=surface.bounding_box_y,
                width=surface.bounding_box_width,
                height=surface.bounding_box_height,
            ),
            frame_url=surface.frame_url,
            created_at=surface.created_at,
        )


class SurfaceList(CamelModel):
    """Surfaces of a video. Empty unless the video's scan is Ready."""

    surfaces: list[DetectedSurface]
    count: int


class VideoCreate(CamelModel):
    """Schema for registering a video."""

    source_ref: str = Field(..., min_length=1, description="Local file path or http(s) URL")
    title: str = Field("", max_length=500)
    priority_score: int = Field(0, description="Higher scores are scanned first in batches")
    duration_seconds: float | None = Field(None, gt=0)


class Video(CamelModel):
    """Schema for video response."""

    id: int
    title: str
    source_ref: str
    duration_seconds: float | None = None
    status: str = Field(description="Pending Scan, Scanning, Ready (N Spots) or Scan Failed")
    priority_score: int
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None
