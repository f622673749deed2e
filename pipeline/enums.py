"""
Centralized enums for status values used throughout the pipeline.
Using str-based enums for database compatibility.
"""

from enum import Enum


class AssetStatus(str, Enum):
    """Lifecycle status of an uploaded asset."""

    DRAFT = "DRAFT"
    UPLOADED = "UPLOADED"
    TRANSCODING = "TRANSCODING"
    READY = "READY"
    FAILED = "FAILED"


class JobStatus(str, Enum):
    """Status values for transcode jobs (a job row starts life at UPLOADED)."""

    UPLOADED = "UPLOADED"
    TRANSCODING = "TRANSCODING"
    READY = "READY"
    FAILED = "FAILED"


class TranscodingStep(str, Enum):
    """Processing step names, used in log lines and failure alerts."""

    CLAIM = "claim"
    DOWNLOAD = "download"
    PROBE = "probe"
    THUMBNAIL = "thumbnail"
    TRANSCODE = "transcode"
    MASTER_PLAYLIST = "master_playlist"
    FINALIZE = "finalize"
