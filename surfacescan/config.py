from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Surface Scan API"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    database_url: str = "sqlite+aiosqlite:///./surfacescan.db"

    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:5000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:5000",
    ]

    # Frame sampling
    frame_sample_rate_seconds: float = Field(2.0, ge=0.5, le=30)
    max_frames_per_video: int = Field(60, ge=1)
    frame_max_dimension: int = Field(640, ge=1)
    download_timeout_seconds: float = Field(60.0, gt=0)
    min_free_disk_mb: int = Field(100, ge=0)

    # Detection backends
    detection_backend: Literal["local", "remote"] = "local"
    ml_device: Literal["cpu", "mps", "cuda", "auto"] = "auto"
    yolo_model_name: str = "yolov8s.pt"
    min_detection_confidence: float = Field(0.4, ge=0, le=1)
    surface_allowlist: list[str] = [
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
    ]
    remote_detector_url: str | None = None
    remote_detector_api_key: str | None = None
    remote_detector_timeout_seconds: float = 30.0

    # Aggregation (tunable, not fixed constants)
    dedup_window_seconds: float = Field(5.0, ge=0)
    dedup_iou_threshold: float = Field(0.5, ge=0, le=1)

    # Scan jobs
    scan_deadline_seconds: float = Field(120.0, gt=0)
    scan_max_retries: int = Field(2, ge=0)
    scan_retry_backoff_seconds: float = Field(1.0, ge=0)
    max_concurrent_scans: int = Field(4, ge=1)

    # Frame images for detected surfaces
    save_frames: bool = True
    frame_storage_path: str = "./frames"

    # Read path: live database or bundled fixture data
    data_source: Literal["live", "fixture"] = "live"
    fixture_path: str | None = None

    # Client poller
    poll_interval_seconds: float = Field(3.0, gt=0)
    poll_margin_seconds: float = Field(15.0, ge=0)


settings = Settings()
