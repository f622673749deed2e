"""
Pytest fixtures for Reelforge tests.
Provides a test database, a job store, fake storage/transcoding backends and sample assets.

Uses a file-backed SQLite database per test; tables are created from the
SQLAlchemy metadata rather than by running migrations.
"""

import os
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

# Point config at throwaway locations BEFORE importing it
_test_temp_dir = tempfile.mkdtemp()
os.environ["REELFORGE_DATABASE_URL"] = f"sqlite:///{_test_temp_dir}/reelforge-default.db"
os.environ["REELFORGE_WORKER_WORK_DIR"] = str(Path(_test_temp_dir) / "work")
os.environ["REELFORGE_ALERT_WEBHOOK_URL"] = ""

from databases import Database  # noqa: E402

from pipeline.database import create_tables  # noqa: E402
from pipeline.errors import DownloadFailure, TranscodeFailure, UploadFailure  # noqa: E402
from pipeline.job_store import JobStore  # noqa: E402
from pipeline.redis_client import RedisClient  # noqa: E402
from worker.alerts import reset_metrics  # noqa: E402
from worker.transcoder import PLAYLIST_NAME, RenditionOutput, SourceInfo, build_master_manifest  # noqa: E402

TIER_360 = {"name": "360p", "width": 640, "height": 360, "bitrate": "800k", "audio_bitrate": "128k"}
TIER_720 = {"name": "720p", "width": 1280, "height": 720, "bitrate": "2500k", "audio_bitrate": "192k"}


@pytest.fixture(scope="function")
async def test_database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Create a fresh SQLite database with all tables for one test."""
    db_url = f"sqlite:///{tmp_path / 'reelforge-test.db'}"
    create_tables(db_url)
    database = Database(db_url)
    await database.connect()
    try:
        yield database
    finally:
        await database.disconnect()


@pytest.fixture(scope="function")
def store(test_database: Database) -> JobStore:
    return JobStore(test_database)


@pytest.fixture(scope="function")
async def draft_asset(store: JobStore) -> str:
    """A DRAFT asset with no job row."""
    return await store.create_asset("Sample clip", owner_id="owner-1")


@pytest.fixture(scope="function")
async def uploaded_asset(store: JobStore, draft_asset: str) -> str:
    """An UPLOADED asset with an UPLOADED job row, ready to be claimed."""
    await store.confirm_upload(draft_asset)
    return draft_asset


@pytest.fixture(autouse=True)
def _fresh_alert_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def mock_redis_client():
    """A RedisClient whose underlying connection is an AsyncMock."""
    client = RedisClient(url="redis://localhost:6379/0")
    client._client = AsyncMock()
    client._healthy = True
    return client


class FakeObjectStore:
    """In-memory stand-in for ObjectStore with the same async surface."""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None, base_url: str = "https://cdn.test"):
        self.objects: Dict[str, bytes] = dict(objects or {})
        self.base_url = base_url
        self.uploads: List[str] = []
        self.fail_puts_for: set = set()

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        if key in self.fail_puts_for:
            raise UploadFailure(f"Upload of {key} failed: simulated")
        self.objects[key] = data
        self.uploads.append(key)

    async def put_file(self, key: str, path: Path, content_type: Optional[str] = None) -> None:
        await self.put(key, path.read_bytes(), content_type)

    async def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise DownloadFailure(f"Download of {key} failed: NoSuchKey")
        return self.objects[key]

    async def download_to(self, key: str, path: Path) -> int:
        data = await self.get(key)
        if not data:
            raise DownloadFailure(f"Downloaded object {key} is empty")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return len(data)

    async def delete(self, prefix: str) -> int:
        doomed = [k for k in self.objects if k.startswith(prefix)]
        for key in doomed:
            del self.objects[key]
        return len(doomed)


class FakeTranscoder:
    """Writes tiny but valid HLS output instead of running ffmpeg."""

    def __init__(
        self,
        info: Optional[SourceInfo] = None,
        failing_tiers: Optional[set] = None,
        thumbnail_error: Optional[Exception] = None,
        probe_error: Optional[Exception] = None,
    ):
        self.info = info or SourceInfo(duration=10.0, width=1920, height=1080)
        self.failing_tiers = failing_tiers or set()
        self.thumbnail_error = thumbnail_error
        self.probe_error = probe_error
        self.transcoded: List[str] = []
        self.thumbnail_offsets: List[float] = []

    async def probe(self, source_path: Path) -> SourceInfo:
        if self.probe_error is not None:
            raise self.probe_error
        return self.info

    async def transcode(self, source_path, tier, output_dir, duration, progress_callback=None) -> RenditionOutput:
        name = tier["name"]
        if name in self.failing_tiers:
            raise TranscodeFailure(f"FFmpeg transcode {name} exited with code 1", diagnostics="Conversion failed!")
        tier_dir = output_dir / name
        tier_dir.mkdir(parents=True, exist_ok=True)
        segment = tier_dir / "seg_00000.ts"
        segment.write_bytes(b"\x47" * 188)
        playlist = tier_dir / PLAYLIST_NAME
        playlist.write_text("#EXTM3U\n#EXT-X-TARGETDURATION:10\n#EXTINF:10.0,\nseg_00000.ts\n#EXT-X-ENDLIST\n")
        if progress_callback:
            await progress_callback(50)
            await progress_callback(100)
        self.transcoded.append(name)
        return RenditionOutput(
            tier=tier,
            playlist=playlist,
            segments=[segment],
            size_bytes=segment.stat().st_size + playlist.stat().st_size,
        )

    async def thumbnail(self, source_path: Path, at_offset: float) -> bytes:
        self.thumbnail_offsets.append(at_offset)
        if self.thumbnail_error is not None:
            raise self.thumbnail_error
        return b"\xff\xd8jpeg"

    def build_master_manifest(self, tiers) -> bytes:
        return build_master_manifest(tiers)


@pytest.fixture
def fake_object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def fake_transcoder() -> FakeTranscoder:
    return FakeTranscoder()
