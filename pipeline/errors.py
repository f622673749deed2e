"""
Exception taxonomy for the transcode pipeline.

Every stage failure is a PipelineError subclass so the processor can tell a
fatal stage error (job goes FAILED) from a degradable one (thumbnail).
"""

from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """
    Truncate an error message to fit a database column or log line.

    Args:
        error: The error text (None passes through)
        max_length: Maximum length of the returned string, including the ellipsis

    Returns:
        The original text if short enough, otherwise a truncated copy ending in "..."
    """
    if error is None:
        return None
    if len(error) <= max_length:
        return error
    if max_length <= 3:
        return error[:max_length]
    return error[: max_length - 3] + "..."


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    fatal = True


class QueueUnavailable(PipelineError):
    """The job queue backend could not be reached."""


class DownloadFailure(PipelineError):
    """Fetching an object from the store failed or returned no data."""


class UploadFailure(PipelineError):
    """Writing an object to the store failed."""


class UnparsableMetadata(PipelineError):
    """Probe output is missing a duration or a video resolution."""


class TranscodeFailure(PipelineError):
    """ffmpeg exited non-zero, timed out, or produced an unusable rendition."""

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.diagnostics = diagnostics


class ThumbnailFailure(PipelineError):
    """Thumbnail extraction failed. Not fatal: the asset is published without one."""

    fatal = False


class PersistenceFailure(PipelineError):
    """A job store write failed (after retries for transient errors)."""


class EmptyManifest(PipelineError):
    """No quality tiers were produced so there is nothing to list in the master manifest."""


class AssetNotFound(PipelineError):
    """No asset (or no job row) exists for the given id."""


class InvalidTransition(PipelineError):
    """A status change that the lifecycle state machine does not allow."""

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Invalid transition: {current} -> {target}")
