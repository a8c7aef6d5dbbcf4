"""Remote vision-service detector.

Sends each frame as a base64 JPEG to an HTTP endpoint fronting a vision model
and parses the structured surface listing it returns.
"""

import base64
import json
import logging
from typing import Any

import cv2
import httpx
from pydantic import BaseModel, Field, ValidationError

from surfacescan.errors import ServiceError

from .allowlist import PlacementSurfaceAllowlist, filter_detections
from .base import BaseSurfaceDetector
from .types import BoundingBox, Frame, RawDetection

logger = logging.getLogger(__name__)

SURFACE_DETECTION_PROMPT = """You are analyzing a video frame to identify suitable areas for product placement in advertising.

Find areas where a product (like a beverage, phone, or small object) could be naturally placed:
flat surfaces (tables, desks, countertops, shelves), walls with clear space, and monitors or screens.
Do not flag areas blocked by people or moving hands, or surfaces that are too cluttered.

For each suitable area provide:
- location: bounding box as {x, y, width, height} in percentages (0-100) of frame dimensions
- surface_type: what it is (desk, table, shelf, counter, wall, monitor, ...)
- confidence: 0.0 to 1.0 based on how suitable it is for product placement
- reasoning: brief explanation

Respond in this exact JSON format:
{"surfaces_found": true, "frame_description": "...", "surfaces": [{"location": {"x": 20, "y": 60, "width": 30, "height": 25}, "surface_type": "desk", "confidence": 0.85, "reasoning": "..."}]}

If no suitable surface exists respond with:
{"surfaces_found": false, "frame_description": "...", "surfaces": [], "no_surface_reason": "..."}"""


class SurfaceLocation(BaseModel):
    """Box in percent (0-100) of frame dimensions."""

    x: float = Field(allow_inf_nan=False)
    y: float = Field(allow_inf_nan=False)
    width: float = Field(allow_inf_nan=False)
    height: float = Field(allow_inf_nan=False)


class RemoteSurface(BaseModel):
    location: SurfaceLocation
    surface_type: str = Field(min_length=1)
    confidence: float = Field(allow_inf_nan=False)
    reasoning: str = ""


class RemoteDetectionResponse(BaseModel):
    surfaces_found: bool
    frame_description: str = ""
    surfaces: list[dict[str, Any]] = Field(default_factory=list)
    no_surface_reason: str | None = None


def strip_code_fence(text: str) -> str:
    """Remove a Markdown code fence wrapped around a JSON payload."""
    stripped = text.strip()
    if stripped.startswith("```json"):
        stripped = stripped[7:]
    elif stripped.startswith("```"):
        stripped = stripped[3:]
    if stripped.endswith("```"):
        stripped = stripped[:-3]
    return stripped.strip()


def parse_detection_payload(payload: Any) -> list[RawDetection]:
    """Parse a remote response body into detections.

    Individual surfaces with a missing or non-finite location or confidence
    are skipped; a body without a boolean ``surfaces_found`` is malformed.

    Raises:
        ServiceError: If the payload is not a valid detection response.
    """
    if isinstance(payload, str):
        try:
            payload = json.loads(strip_code_fence(payload))
        except json.JSONDecodeError as e:
            raise ServiceError(f"Malformed detection payload: {e}") from e

    try:
        response = RemoteDetectionResponse.model_validate(payload)
    except ValidationError as e:
        raise ServiceError(f"Malformed detection payload: {e.error_count()} validation errors") from e

    if not response.surfaces_found:
        if response.no_surface_reason:
            logger.debug(f"No surfaces in frame: {response.no_surface_reason}")
        return []

    detections = []
    for item in response.surfaces:
        try:
            surface = RemoteSurface.model_validate(item)
        except ValidationError:
            logger.warning(f"Skipping invalid surface entry: {str(item)[:200]}")
            continue

        loc = surface.location
        detections.append(
            RawDetection(
                label=surface.surface_type.capitalize(),
                score=min(max(surface.confidence, 0.0), 1.0),
                bbox=BoundingBox(
                    x=loc.x / 100, y=loc.y / 100, width=loc.width / 100, height=loc.height / 100
                ).clamped(),
            )
        )
    return detections


class RemoteServiceDetector(BaseSurfaceDetector):
    """Detector that delegates frames to an external vision API."""

    def __init__(
        self,
        endpoint_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        confidence_threshold: float = 0.4,
        allowlist: PlacementSurfaceAllowlist | None = None,
        client: httpx.Client | None = None,
        jpeg_quality: int = 70,
    ) -> None:
        self._endpoint_url = endpoint_url
        self._confidence_threshold = confidence_threshold
        self._allowlist = allowlist or PlacementSurfaceAllowlist()
        self._jpeg_quality = jpeg_quality

        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))
        self._headers = headers

    def is_loaded(self) -> bool:
        return True

    def get_model_info(self) -> dict[str, str | int | float]:
        return {
            "backend": "remote",
            "endpoint_url": self._endpoint_url,
            "confidence_threshold": self._confidence_threshold,
        }

    def _encode_frame(self, frame: Frame) -> str:
        ok, buffer = cv2.imencode(".jpg", frame.image, [cv2.IMWRITE_JPEG_QUALITY, self._jpeg_quality])
        if not ok:
            raise ServiceError(f"Failed to encode frame at {frame.timestamp:.1f}s")
        return base64.b64encode(buffer.tobytes()).decode("ascii")

    def detect(self, frame: Frame) -> list[RawDetection]:
        """Send one frame to the vision service.

        Raises:
            ServiceError: On transport failure, non-2xx status, or malformed body.
        """
        body = {
            "prompt": SURFACE_DETECTION_PROMPT,
            "image": {"mime_type": "image/jpeg", "data": self._encode_frame(frame)},
        }

        try:
            response = self._client.post(self._endpoint_url, json=body, headers=self._headers)
        except httpx.HTTPError as e:
            raise ServiceError(f"Vision service request failed: {e}") from e

        if not response.is_success:
            raise ServiceError(
                f"Vision service returned {response.status_code}: {response.text[:200]}"
            )

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text

        detections = parse_detection_payload(payload)
        logger.debug(f"Frame {frame.timestamp:.1f}s: {len(detections)} raw surfaces from service")
        return filter_detections(detections, self._allowlist, self._confidence_threshold)

    def close(self) -> None:
        self._client.close()
