"""Error taxonomy for scan jobs.

Permanent errors fail the job immediately. Transient errors are retried by the
scheduler before the video is marked as failed.
"""


class ScanError(Exception):
    """Base class for errors raised while scanning a video."""

    retryable: bool = False


class SourceUnavailable(ScanError):
    """The video byte source could not be opened or downloaded."""


class UnsupportedFormat(ScanError):
    """The container or codec could not be decoded."""


class ModelUnavailable(ScanError):
    """The local detection model is not loaded or failed to initialize."""

    retryable = True


class ServiceError(ScanError):
    """The remote detection service failed or returned a malformed payload."""

    retryable = True


class ScanTimeout(ScanError):
    """The scan job exceeded its deadline."""


class VideoNotFound(LookupError):
    """No video asset exists for the requested id."""

    def __init__(self, video_id: int) -> None:
        super().__init__(f"Video with id {video_id} not found")
        self.video_id = video_id
