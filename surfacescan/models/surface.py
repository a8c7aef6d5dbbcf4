"""Detected surface model."""

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Float, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from surfacescan.database import Base

if TYPE_CHECKING:
    from surfacescan.models.video import VideoAsset
    from surfacescan.services.aggregator import AggregatedSurface


class DetectedSurface(Base):
    """A placement surface found in a video. Rows are immutable once written."""

    __tablename__ = "detected_surfaces"
    __table_args__ = (Index("ix_surface_video_timestamp", "video_id", "timestamp"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    video_id: Mapped[int] = mapped_column(ForeignKey("video_assets.id", ondelete="CASCADE"))
    timestamp: Mapped[float] = mapped_column(Float)  # seconds into the video
    surface_type: Mapped[str] = mapped_column(String(100))
    confidence: Mapped[float] = mapped_column(Float)
    bounding_box_x: Mapped[float] = mapped_column(Float)
    bounding_box_y: Mapped[float] = mapped_column(Float)
    bounding_box_width: Mapped[float] = mapped_column(Float)
    bounding_box_height: Mapped[float] = mapped_column(Float)
    frame_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    video: Mapped["VideoAsset"] = relationship("VideoAsset", back_populates="surfaces")

    @classmethod
    def from_aggregated(cls, surface: "AggregatedSurface") -> "DetectedSurface":
        return cls(
            video_id=surface.video_id,
            timestamp=surface.timestamp,
            surface_type=surface.surface_type,
            confidence=surface.confidence,
            bounding_box_x=surface.bbox.x,
            bounding_box_y=surface.bbox.y,
            bounding_box_width=surface.bbox.width,
            bounding_box_height=surface.bbox.height,
            frame_url=surface.frame_url,
        )

    def __repr__(self) -> str:
        return (
            f"<DetectedSurface(id={self.id}, video_id={self.video_id}, "
            f"type={self.surface_type}, t={self.timestamp:.1f}s)>"
        )
