"""Video asset model and scan status encoding."""

import enum
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from surfacescan.database import Base

if TYPE_CHECKING:
    from surfacescan.models.surface import DetectedSurface


class ScanState(str, enum.Enum):
    """Scan lifecycle states of a video."""

    PENDING_SCAN = "pending_scan"
    SCANNING = "scanning"
    READY = "ready"
    NO_SURFACES_RETRY = "no_surfaces_retry"
    SCAN_FAILED = "scan_failed"


TERMINAL_STATES = frozenset({ScanState.READY, ScanState.NO_SURFACES_RETRY, ScanState.SCAN_FAILED})

_READY_PATTERN = re.compile(r"^Ready \((\d+) Spots?\)$")


@dataclass(frozen=True)
class ScanStatus:
    """Scan status with its surface count.

    Stored as a display string on the video row: "Pending Scan", "Scanning",
    "Ready (N Spots)", "Ready (0 Spots)" (no surfaces found) and "Scan Failed".
    """

    state: ScanState
    count: int = 0

    @classmethod
    def pending(cls) -> "ScanStatus":
        return cls(ScanState.PENDING_SCAN)

    @classmethod
    def scanning(cls) -> "ScanStatus":
        return cls(ScanState.SCANNING)

    @classmethod
    def failed(cls) -> "ScanStatus":
        return cls(ScanState.SCAN_FAILED)

    @classmethod
    def from_count(cls, count: int) -> "ScanStatus":
        """Terminal success status derived from the number of stored surfaces."""
        if count < 0:
            raise ValueError("Surface count cannot be negative")
        if count == 0:
            return cls(ScanState.NO_SURFACES_RETRY)
        return cls(ScanState.READY, count)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def encode(self) -> str:
        if self.state == ScanState.PENDING_SCAN:
            return "Pending Scan"
        if self.state == ScanState.SCANNING:
            return "Scanning"
        if self.state == ScanState.SCAN_FAILED:
            return "Scan Failed"
        if self.state == ScanState.NO_SURFACES_RETRY:
            return "Ready (0 Spots)"
        return f"Ready ({self.count} Spots)"

    @classmethod
    def parse(cls, value: str) -> "ScanStatus":
        """Decode a stored status string.

        Raises:
            ValueError: If the string is not a known status encoding.
        """
        text = value.strip()
        if text == "Pending Scan":
            return cls.pending()
        if text == "Scanning":
            return cls.scanning()
        if text == "Scan Failed":
            return cls.failed()
        match = _READY_PATTERN.match(text)
        if match:
            return cls.from_count(int(match.group(1)))
        raise ValueError(f"Unknown scan status: {value!r}")

    def __str__(self) -> str:
        return self.encode()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VideoAsset(Base):
    """A creator video known to the pipeline.

    Owned by the video library; the scan pipeline reads ``source_ref`` and
    writes ``status``.
    """

    __tablename__ = "video_assets"
    __table_args__ = (Index("ix_video_status_priority", "status", "priority_score"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(500), default="")
    source_ref: Mapped[str] = mapped_column(Text)  # local path or http(s) URL
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="Pending Scan")
    priority_score: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    surfaces: Mapped[list["DetectedSurface"]] = relationship(
        "DetectedSurface", back_populates="video", cascade="all, delete-orphan"
    )

    @property
    def scan_status(self) -> ScanStatus:
        return ScanStatus.parse(self.status)

    def __repr__(self) -> str:
        return f"<VideoAsset(id={self.id}, status={self.status!r})>"
