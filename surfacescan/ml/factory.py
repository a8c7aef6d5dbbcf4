"""Detector selection.

The backend is chosen once from configuration; scan jobs receive a ready
detector and never branch on the backend themselves.
"""

from functools import lru_cache

from surfacescan.config import Settings, settings as default_settings
from surfacescan.errors import ModelUnavailable

from .allowlist import PlacementSurfaceAllowlist
from .base import BaseSurfaceDetector
from .remote_detector import RemoteServiceDetector
from .yolo_detector import LocalModelDetector


def resolve_device(device_setting: str) -> str:
    """Resolve 'auto' device setting to actual device."""
    if device_setting == "auto":
        try:
            import torch

            if torch.cuda.is_available():
                return "cuda"
            if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
                return "mps"
        except ImportError:
            pass
        return "cpu"
    return device_setting


def create_detector(backend: str | None = None, config: Settings | None = None) -> BaseSurfaceDetector:
    """Build a detector for the configured backend.

    Raises:
        ModelUnavailable: If the remote backend is selected without an endpoint.
        ValueError: If the backend name is unknown.
    """
    config = config or default_settings
    backend = backend or config.detection_backend
    allowlist = PlacementSurfaceAllowlist(config.surface_allowlist)

    if backend == "local":
        return LocalModelDetector(
            model_path=config.yolo_model_name,
            confidence_threshold=config.min_detection_confidence,
            device=resolve_device(config.ml_device),
            allowlist=allowlist,
        )
    if backend == "remote":
        if not config.remote_detector_url:
            raise ModelUnavailable("Remote detection selected but REMOTE_DETECTOR_URL is not set")
        return RemoteServiceDetector(
            endpoint_url=config.remote_detector_url,
            api_key=config.remote_detector_api_key,
            timeout_seconds=config.remote_detector_timeout_seconds,
            confidence_threshold=config.min_detection_confidence,
            allowlist=allowlist,
        )
    raise ValueError(f"Unknown detection backend: {backend}")


@lru_cache(maxsize=None)
def get_detector(backend: str | None = None) -> BaseSurfaceDetector:
    """Shared detector per backend so the local model is loaded only once."""
    return create_detector(backend)
