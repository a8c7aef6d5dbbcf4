from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import Frame, RawDetection


class BaseSurfaceDetector(ABC):
    """Interface shared by all detection backends.

    ``detect`` returns allowlisted detections above the confidence threshold,
    with boxes already normalized to the unit square.
    """

    @abstractmethod
    def detect(self, frame: "Frame") -> list["RawDetection"]:
        pass

    @abstractmethod
    def is_loaded(self) -> bool:
        pass

    @abstractmethod
    def get_model_info(self) -> dict[str, str | int | float]:
        pass
