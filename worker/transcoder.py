"""
ffmpeg/ffprobe adapter.

Probes source metadata, encodes one segmented HLS rendition per quality tier,
grabs a poster frame and builds the master manifest. Every tool invocation is
an asyncio subprocess with a timeout; failures are raised as pipeline errors
carrying the tail of the tool's diagnostic output.
"""

import asyncio
import logging
import math
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, List, Optional, Sequence, Tuple

from config import (
    ERROR_LOG_MAX_LENGTH,
    FFMPEG_PATH,
    FFMPEG_TIMEOUT_BASE_MULTIPLIER,
    FFMPEG_TIMEOUT_MAXIMUM,
    FFMPEG_TIMEOUT_MINIMUM,
    FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS,
    FFPROBE_PATH,
    HLS_SEGMENT_DURATION,
    PROBE_TIMEOUT,
    THUMBNAIL_TIMEOUT,
)
from pipeline.errors import ThumbnailFailure, TranscodeFailure, UnparsableMetadata

logger = logging.getLogger(__name__)

# Maximum video duration allowed (1 week in seconds)
MAX_DURATION_SECONDS = 7 * 24 * 60 * 60  # 604800 seconds

PLAYLIST_NAME = "index.m3u8"
SEGMENT_PATTERN = "seg_%05d.ts"

# ffprobe prints "Duration: 00:01:02.50, start: ..." for the container
_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
# First video stream line, e.g. "Stream #0:0(und): Video: h264 (High) ..., 1920x1080 [SAR 1:1 DAR 16:9]"
_VIDEO_RE = re.compile(r"Video:.*?\b(\d{2,5})x(\d{2,5})\b")

ProgressCallback = Callable[[int], Awaitable[None]]


@dataclass
class SourceInfo:
    duration: float
    width: int
    height: int


@dataclass
class RenditionOutput:
    """A finished HLS rendition on local disk."""

    tier: dict
    playlist: Path
    segments: List[Path] = field(default_factory=list)
    size_bytes: int = 0

    @property
    def name(self) -> str:
        return self.tier["name"]


def calculate_ffmpeg_timeout(duration: float, height: int = 1080) -> float:
    """
    Calculate appropriate timeout for ffmpeg transcoding based on video duration and resolution.

    Higher resolutions take longer to encode, so timeouts scale accordingly.

    Args:
        duration: Video duration in seconds
        height: Target resolution height (e.g., 360, 720, 1080)

    Returns:
        Timeout in seconds, clamped between min and max values
    """
    # Unknown resolutions get the slowest multiplier
    resolution_multiplier = FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS.get(height, 2.0)
    effective_multiplier = FFMPEG_TIMEOUT_BASE_MULTIPLIER * resolution_multiplier
    timeout = duration * effective_multiplier
    return max(FFMPEG_TIMEOUT_MINIMUM, min(timeout, FFMPEG_TIMEOUT_MAXIMUM))


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize a probed video duration.

    Args:
        duration: Duration value (accepts any input type)

    Returns:
        Validated duration as float

    Raises:
        ValueError: If duration is invalid, missing, or out of acceptable range
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    # Catches corrupted metadata
    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")

    return float(duration)


def parse_probe_output(output: str) -> SourceInfo:
    """
    Extract duration and video resolution from ffprobe's diagnostic output.

    Raises:
        UnparsableMetadata: Duration or resolution missing, or duration out of range
    """
    match = _DURATION_RE.search(output)
    if not match:
        raise UnparsableMetadata("Could not find duration in probe output")
    hours, minutes, seconds = match.groups()
    raw_duration = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    try:
        duration = validate_duration(raw_duration)
    except ValueError as e:
        raise UnparsableMetadata(str(e)) from e

    match = _VIDEO_RE.search(output)
    if not match:
        raise UnparsableMetadata("No video stream resolution in probe output")
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise UnparsableMetadata(f"Invalid video resolution {width}x{height}")

    return SourceInfo(duration=duration, width=width, height=height)


def parse_kbps(bitrate: str) -> int:
    """Convert an ffmpeg bitrate string ("800k", "5M", "128000") to kbps."""
    value = bitrate.strip().lower()
    if value.endswith("k"):
        return int(float(value[:-1]))
    if value.endswith("m"):
        return int(float(value[:-1]) * 1000)
    return int(float(value) / 1000)


def tier_bandwidth(tier: dict) -> int:
    """Advertised bandwidth in bits per second (video plus audio)."""
    return (parse_kbps(tier["bitrate"]) + parse_kbps(tier["audio_bitrate"])) * 1000


def build_master_manifest(tiers: Sequence[dict]) -> bytes:
    """
    Build the HLS master manifest for the given tiers, in the given order.

    Each entry points at {tier}/index.m3u8 relative to the manifest. An empty
    tier list yields a header-only manifest; the caller decides whether that
    is acceptable.
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for tier in tiers:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={tier_bandwidth(tier)},RESOLUTION={tier['width']}x{tier['height']}"
        )
        lines.append(f"{tier['name']}/{PLAYLIST_NAME}")
    return ("\n".join(lines) + "\n").encode("utf-8")


def validate_hls_playlist(playlist_path: Path) -> Tuple[bool, Optional[str], List[Path]]:
    """
    Validate an HLS rendition playlist is complete and well-formed.

    Returns:
        (is_valid, error_message, segment_paths)
    """
    if not playlist_path.exists():
        return False, "Playlist file does not exist", []

    try:
        content = playlist_path.read_text()
    except OSError as e:
        return False, f"Error reading playlist: {e}", []

    if not content.startswith("#EXTM3U"):
        return False, "Missing #EXTM3U header", []

    # End marker means ffmpeg finished writing the playlist
    if "#EXT-X-ENDLIST" not in content:
        return False, "Missing #EXT-X-ENDLIST (incomplete transcode)", []

    segments: List[Path] = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        segment_path = playlist_path.parent / line
        if not segment_path.exists():
            return False, f"Missing segment file: {line}", []
        if segment_path.stat().st_size == 0:
            return False, f"Empty segment file: {line}", []
        segments.append(segment_path)

    if not segments:
        return False, "Playlist contains no segment references", []

    return True, None, segments


def _tail(lines: Sequence[str], max_length: int = ERROR_LOG_MAX_LENGTH) -> str:
    text = "\n".join(lines).strip()
    return text[-max_length:]


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """
    Clean up an FFmpeg subprocess, handling race conditions where the process
    may exit between checking returncode and calling kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Already exited
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg_with_progress(
    cmd: List[str],
    duration: float,
    timeout: float,
    progress_callback: Optional[ProgressCallback] = None,
    context: str = "FFmpeg",
) -> Tuple[bool, Optional[str], str]:
    """
    Run an FFmpeg command with timeout and progress tracking.

    It handles:
    - Progress parsing from "-progress pipe:1" output on stdout
    - A bounded tail of stderr kept for diagnostics (stderr is drained
      continuously so a chatty ffmpeg never blocks on a full pipe)
    - Timeout handling with process termination
    - Cleanup on any exit path, including cancellation

    Args:
        cmd: FFmpeg command as list of arguments
        duration: Video duration in seconds (for progress calculation)
        timeout: Maximum time to wait for FFmpeg to complete
        progress_callback: Optional async callback for progress updates (0-100)
        context: Description for logging (e.g., "FFmpeg transcode 720p")

    Returns:
        (success, error_message, diagnostics) where error_message is None on
        success and diagnostics is the tail of stderr.
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    stderr_tail: Deque[str] = deque(maxlen=50)
    last_progress_update = 0
    loop = asyncio.get_running_loop()
    start_time = loop.time()

    async def read_progress():
        nonlocal last_progress_update
        while True:
            line = await process.stdout.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()

            # Format: out_time_ms=123456789 (microseconds despite the name)
            if line_str.startswith("out_time_ms="):
                try:
                    time_ms = int(line_str.split("=")[1])
                except (ValueError, IndexError):
                    continue
                current_seconds = time_ms / 1000000.0
                if duration > 0:
                    progress = min(100, int(current_seconds / duration * 100))
                    if progress > last_progress_update:
                        last_progress_update = progress
                        if progress_callback:
                            await progress_callback(progress)

    async def read_stderr():
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            stderr_tail.append(line.decode("utf-8", errors="ignore").rstrip())

    timed_out = False
    try:
        await asyncio.wait_for(asyncio.gather(read_progress(), read_stderr(), process.wait()), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        elapsed = loop.time() - start_time
        logger.warning(f"{context} exceeded {timeout:.0f}s limit (ran for {elapsed:.0f}s)")
    finally:
        await cleanup_ffmpeg_process(process, context)

    diagnostics = _tail(stderr_tail)

    if timed_out:
        return False, f"{context} timed out after {timeout:.0f} seconds", diagnostics

    if process.returncode != 0:
        error_msg = f"{context} exited with code {process.returncode}"
        logger.error(error_msg)
        return False, error_msg, diagnostics

    return True, None, diagnostics


class Transcoder:
    """Wraps the ffmpeg and ffprobe command-line tools."""

    def __init__(
        self,
        ffmpeg_path: str = FFMPEG_PATH,
        ffprobe_path: str = FFPROBE_PATH,
        segment_duration: int = HLS_SEGMENT_DURATION,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.segment_duration = segment_duration

    async def probe(self, source_path: Path, timeout: float = PROBE_TIMEOUT) -> SourceInfo:
        """
        Read duration and resolution from the source.

        ffprobe without output options writes the container summary to stderr.

        Raises:
            UnparsableMetadata: ffprobe failed, timed out, or printed no usable metadata
        """
        cmd = [self.ffprobe_path, "-hide_banner", str(source_path)]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise UnparsableMetadata(f"Could not run ffprobe: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await cleanup_ffmpeg_process(process, "ffprobe")
            raise UnparsableMetadata(f"ffprobe timed out after {timeout}s")

        output = stderr.decode("utf-8", errors="ignore") + stdout.decode("utf-8", errors="ignore")
        if process.returncode != 0:
            raise UnparsableMetadata(f"ffprobe failed: {_tail(output.splitlines(), 500)}")

        return parse_probe_output(output)

    def build_transcode_command(self, source_path: Path, tier: dict, tier_dir: Path) -> List[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-i",
            str(source_path),
            "-c:v",
            "libx264",
            "-preset",
            "fast",
            "-b:v",
            tier["bitrate"],
            "-vf",
            f"scale={tier['width']}:{tier['height']}",
            "-c:a",
            "aac",
            "-b:a",
            tier["audio_bitrate"],
            "-f",
            "hls",
            "-hls_time",
            str(self.segment_duration),
            "-hls_list_size",
            "0",
            "-hls_playlist_type",
            "vod",
            "-hls_segment_filename",
            str(tier_dir / SEGMENT_PATTERN),
            "-progress",
            "pipe:1",
            str(tier_dir / PLAYLIST_NAME),
        ]

    async def transcode(
        self,
        source_path: Path,
        tier: dict,
        output_dir: Path,
        duration: float,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> RenditionOutput:
        """
        Encode one quality tier to {output_dir}/{tier}/index.m3u8 plus seg_NNNNN.ts files.

        Raises:
            TranscodeFailure: ffmpeg failed or timed out, or the playlist is incomplete
        """
        name = tier["name"]
        tier_dir = output_dir / name
        tier_dir.mkdir(parents=True, exist_ok=True)

        timeout = calculate_ffmpeg_timeout(duration, tier["height"])
        logger.info(f"Transcoding {name} (timeout {timeout:.0f}s)")

        cmd = self.build_transcode_command(source_path, tier, tier_dir)
        try:
            success, error_msg, diagnostics = await run_ffmpeg_with_progress(
                cmd=cmd,
                duration=duration,
                timeout=timeout,
                progress_callback=progress_callback,
                context=f"FFmpeg transcode {name}",
            )
        except OSError as e:
            raise TranscodeFailure(f"Could not run ffmpeg for {name}: {e}") from e

        if not success:
            raise TranscodeFailure(error_msg or f"Transcode of {name} failed", diagnostics=diagnostics)

        playlist = tier_dir / PLAYLIST_NAME
        is_valid, problem, segments = validate_hls_playlist(playlist)
        if not is_valid:
            raise TranscodeFailure(f"Rendition {name} is unusable: {problem}", diagnostics=diagnostics)

        size_bytes = playlist.stat().st_size + sum(seg.stat().st_size for seg in segments)
        return RenditionOutput(tier=tier, playlist=playlist, segments=segments, size_bytes=size_bytes)

    async def thumbnail(self, source_path: Path, at_offset: float, timeout: float = THUMBNAIL_TIMEOUT) -> bytes:
        """
        Grab a single JPEG frame at_offset seconds into the source.

        Raises:
            ThumbnailFailure: ffmpeg failed, timed out, or wrote nothing
        """
        output_path = source_path.parent / "poster.jpg"
        # Input seeking (-ss before -i) jumps to the nearest keyframe without decoding up to it
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-ss",
            f"{max(0.0, at_offset):.3f}",
            "-i",
            str(source_path),
            "-vframes",
            "1",
            "-q:v",
            "2",
            str(output_path),
        ]

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ThumbnailFailure(f"Could not run ffmpeg: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await cleanup_ffmpeg_process(process, "FFmpeg thumbnail")
            raise ThumbnailFailure(f"Thumbnail generation timed out after {timeout}s")

        if process.returncode != 0:
            detail = _tail(stderr.decode("utf-8", errors="ignore").splitlines(), 500)
            raise ThumbnailFailure(f"Thumbnail generation failed: {detail}")

        try:
            data = output_path.read_bytes()
        except OSError as e:
            raise ThumbnailFailure(f"Thumbnail not written: {e}") from e
        if not data:
            raise ThumbnailFailure("Thumbnail is empty")
        return data

    def build_master_manifest(self, tiers: Sequence[dict]) -> bytes:
        return build_master_manifest(tiers)
