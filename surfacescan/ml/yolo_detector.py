"""YOLOv8 detector implementation for placement surface detection."""

import logging
import threading
from pathlib import Path
from typing import Any

from ultralytics import YOLO

from surfacescan.errors import ModelUnavailable

from .allowlist import PlacementSurfaceAllowlist, filter_detections
from .base import BaseSurfaceDetector
from .types import BoundingBox, Frame, RawDetection

logger = logging.getLogger(__name__)


class LocalModelDetector(BaseSurfaceDetector):
    """In-process YOLO detector over COCO classes.

    COCO has no "wall" or "shelf" class, so this backend mostly surfaces desks,
    tables, monitors and tabletop objects. The model is loaded once and shared
    across jobs; inference is serialized because the predictor is not thread-safe.
    """

    def __init__(
        self,
        model_path: str | Path | None = None,
        confidence_threshold: float = 0.4,
        device: str = "cpu",
        allowlist: PlacementSurfaceAllowlist | None = None,
    ) -> None:
        """Initialize the YOLO detector.

        Args:
            model_path: Path to YOLO model weights. If None, downloads yolov8s.pt.
            confidence_threshold: Minimum confidence score for detections (0-1).
            device: Device to run inference on ('cpu', 'cuda', 'mps').
            allowlist: Surface types to keep (defaults to the standard allowlist).
        """
        self._model_path = model_path or "yolov8s.pt"
        self._confidence_threshold = confidence_threshold
        self._device = device
        self._allowlist = allowlist or PlacementSurfaceAllowlist()
        self._model: YOLO | None = None
        self._lock = threading.Lock()

    def load(self) -> None:
        """Load the YOLO model if not already loaded.

        Raises:
            ModelUnavailable: If the weights cannot be loaded.
        """
        with self._lock:
            if self._model is not None:
                return
            try:
                model = YOLO(str(self._model_path))
                model.to(self._device)
            except Exception as e:
                raise ModelUnavailable(f"Failed to load model {self._model_path}: {e}") from e
            self._model = model
            logger.info(f"Loaded detection model {self._model_path} on {self._device}")

    def is_loaded(self) -> bool:
        """Check if the model is loaded and ready for inference."""
        return self._model is not None

    def get_model_info(self) -> dict[str, str | int | float]:
        return {
            "backend": "local",
            "model_path": str(self._model_path),
            "device": self._device,
            "confidence_threshold": self._confidence_threshold,
            "loaded": int(self.is_loaded()),
        }

    def detect(self, frame: Frame) -> list[RawDetection]:
        """Detect placement surfaces in a single frame.

        Args:
            frame: Sampled frame (HxWxC, BGR format from OpenCV).

        Returns:
            Allowlisted detections with normalized boxes.
        """
        self.load()
        assert self._model is not None

        with self._lock:
            try:
                results = self._model.predict(
                    source=frame.image,
                    conf=self._confidence_threshold,
                    verbose=False,
                    device=self._device,
                )
            except Exception as e:
                raise ModelUnavailable(f"Inference failed: {e}") from e

        detections = self._process_results(results[0], frame.width, frame.height) if results else []
        return filter_detections(detections, self._allowlist, self._confidence_threshold)

    def _process_results(self, result: Any, width: int, height: int) -> list[RawDetection]:
        """Convert a YOLO result into normalized detections."""
        detections: list[RawDetection] = []

        if result.boxes is None:
            return detections

        boxes = result.boxes
        names = result.names or {}

        for i in range(len(boxes)):
            class_id = int(boxes.cls[i].item())
            x1, y1, x2, y2 = boxes.xyxy[i].cpu().numpy()

            detections.append(
                RawDetection(
                    label=names.get(class_id, f"class_{class_id}"),
                    score=float(boxes.conf[i].item()),
                    bbox=BoundingBox.from_pixels(x1, y1, x2, y2, width, height),
                )
            )

        return detections

    @property
    def confidence_threshold(self) -> float:
        return self._confidence_threshold

    @property
    def device(self) -> str:
        return self._device
