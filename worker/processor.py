"""
Transcode job processor.

Turns one dequeued asset id into a published HLS package:

    claim -> download -> probe -> thumbnail -> per-tier transcode + upload
          -> master manifest -> finalize

The claim is the only gate: a job that is not UPLOADED (already finished,
failed, or owned by another worker) is skipped without side effects, which
makes duplicate queue deliveries harmless. Any fatal stage error marks the
job and the asset FAILED; there is no automatic retry. The thumbnail stage is
the one degradable step.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from config import (
    ALLOW_EMPTY_TIER_SET,
    PARALLEL_TIERS,
    QUALITY_TIERS,
    THUMBNAIL_OFFSET_FRACTION,
    WORKER_WORK_DIR,
)
from pipeline.enums import AssetStatus, TranscodingStep
from pipeline.errors import (
    EmptyManifest,
    PersistenceFailure,
    PipelineError,
    ThumbnailFailure,
    TranscodeFailure,
    UploadFailure,
    truncate_error,
)
from pipeline.job_state import is_terminal
from pipeline.job_store import JobStore
from pipeline.object_store import (
    ObjectStore,
    master_manifest_key,
    rendition_index_key,
    rendition_prefix,
    source_key,
    thumbnail_key,
)
from pipeline.status_cache import StatusCache
from worker.alerts import alert_job_failed, get_metrics, send_alert_fire_and_forget
from worker.transcoder import RenditionOutput, Transcoder

if TYPE_CHECKING:
    from worker.runner import WorkerState

logger = logging.getLogger(__name__)

# Progress checkpoints
PROGRESS_CLAIMED = 10
PROGRESS_PROBED = 20
PROGRESS_TIERS_SPAN = 60
PROGRESS_MANIFEST = 90


def tier_progress(index: int, tier_count: int) -> int:
    """Job progress after the tier at index (0-based) is uploaded; 80 after the last one."""
    return PROGRESS_PROBED + ((index + 1) * PROGRESS_TIERS_SPAN) // tier_count


@dataclass
class _JobRun:
    asset_id: str
    job_dir: Path
    progress: int = PROGRESS_CLAIMED
    step: TranscodingStep = TranscodingStep.CLAIM


class TranscodeProcessor:
    """Runs the transcode pipeline for one asset at a time."""

    def __init__(
        self,
        store: JobStore,
        object_store: ObjectStore,
        transcoder: Transcoder,
        status_cache: Optional[StatusCache] = None,
        state: Optional["WorkerState"] = None,
        tiers: Optional[List[dict]] = None,
        work_dir: Path = WORKER_WORK_DIR,
        parallel_tiers: int = PARALLEL_TIERS,
        allow_empty_tier_set: bool = ALLOW_EMPTY_TIER_SET,
        thumbnail_offset_fraction: float = THUMBNAIL_OFFSET_FRACTION,
    ):
        self.store = store
        self.object_store = object_store
        self.transcoder = transcoder
        self.status_cache = status_cache
        self.state = state
        self.tiers = list(QUALITY_TIERS if tiers is None else tiers)
        self.work_dir = Path(work_dir)
        self.parallel_tiers = max(1, parallel_tiers)
        self.allow_empty_tier_set = allow_empty_tier_set
        self.thumbnail_offset_fraction = thumbnail_offset_fraction

    @property
    def worker_id(self) -> str:
        return self.state.worker_id if self.state is not None else "local"

    async def process(self, asset_id: str) -> bool:
        """
        Run the full pipeline for asset_id.

        Returns:
            True if the asset was published READY, False if the job was skipped or failed
        """
        try:
            job = await self.store.claim_job(asset_id, self.worker_id, initial_progress=PROGRESS_CLAIMED)
        except PersistenceFailure as e:
            logger.error(f"Could not claim job for asset {asset_id}: {e}")
            return False

        if job is None:
            await self._log_skip(asset_id)
            return False

        logger.info(f"Claimed asset {asset_id} (worker {self.worker_id})")

        run = _JobRun(asset_id=asset_id, job_dir=self.work_dir / asset_id)
        try:
            await self._publish(asset_id, AssetStatus.TRANSCODING, PROGRESS_CLAIMED)
            await self._run_pipeline(run)
        except Exception as e:
            await self._fail(run, e)
            return False
        finally:
            shutil.rmtree(run.job_dir, ignore_errors=True)

        get_metrics().increment_completed()
        logger.info(f"Asset {asset_id} is READY")
        return True

    async def _run_pipeline(self, run: _JobRun) -> None:
        asset_id = run.asset_id
        run.job_dir.mkdir(parents=True, exist_ok=True)

        run.step = TranscodingStep.DOWNLOAD
        source_path = run.job_dir / "source.mp4"
        size = await self.object_store.download_to(source_key(asset_id), source_path)
        logger.info(f"Downloaded source for {asset_id} ({size} bytes)")

        run.step = TranscodingStep.PROBE
        info = await self.transcoder.probe(source_path)
        logger.info(f"Source {asset_id}: {info.width}x{info.height}, {info.duration:.2f}s")
        await self.store.record_source_metadata(asset_id, info.duration, info.width, info.height)
        await self._advance(run, PROGRESS_PROBED)

        run.step = TranscodingStep.THUMBNAIL
        thumbnail_url = await self._make_thumbnail(asset_id, source_path, info.duration)

        run.step = TranscodingStep.TRANSCODE
        completed = await self._transcode_tiers(run, source_path, info.duration)

        run.step = TranscodingStep.MASTER_PLAYLIST
        if not completed and not self.allow_empty_tier_set:
            raise EmptyManifest("No quality tiers configured, nothing to put in the master manifest")
        manifest = self.transcoder.build_master_manifest([rendition.tier for rendition in completed])
        manifest_key = master_manifest_key(asset_id)
        await self.object_store.put(manifest_key, manifest, "application/vnd.apple.mpegurl")
        await self._advance(run, PROGRESS_MANIFEST)

        run.step = TranscodingStep.FINALIZE
        await self.store.mark_ready(asset_id, self.object_store.public_url(manifest_key), thumbnail_url)
        run.progress = 100
        await self._publish(asset_id, AssetStatus.READY, 100)

    async def _advance(self, run: _JobRun, progress: int) -> None:
        await self.store.update_progress(run.asset_id, progress)
        run.progress = max(run.progress, progress)

    async def _make_thumbnail(self, asset_id: str, source_path: Path, duration: float) -> Optional[str]:
        """Capture and upload the poster frame; returns its URL, or None if either step failed."""
        try:
            data = await self.transcoder.thumbnail(source_path, duration * self.thumbnail_offset_fraction)
            key = thumbnail_key(asset_id)
            await self.object_store.put(key, data, "image/jpeg")
        except (ThumbnailFailure, UploadFailure) as e:
            logger.warning(f"Thumbnail skipped for {asset_id}: {e}")
            return None
        return self.object_store.public_url(key)

    async def _transcode_tiers(self, run: _JobRun, source_path: Path, duration: float) -> List[RenditionOutput]:
        """
        Encode every tier, at most parallel_tiers at a time.

        Results are taken in declared order and each is uploaded before the
        next is looked at. The first failure cancels whatever is still
        encoding.
        """
        tier_count = len(self.tiers)
        if tier_count == 0:
            return []

        output_dir = run.job_dir / "hls"
        semaphore = asyncio.Semaphore(self.parallel_tiers)

        async def encode(tier: dict) -> RenditionOutput:
            async with semaphore:
                return await self.transcoder.transcode(
                    source_path,
                    tier,
                    output_dir,
                    duration,
                    progress_callback=self._tier_progress_logger(run.asset_id, tier["name"]),
                )

        tasks = [asyncio.create_task(encode(tier)) for tier in self.tiers]
        completed: List[RenditionOutput] = []
        try:
            for index, task in enumerate(tasks):
                rendition = await task
                await self._upload_rendition(run.asset_id, rendition)
                await self._advance(run, tier_progress(index, tier_count))
                completed.append(rendition)
                logger.info(f"Tier {rendition.name} done for {run.asset_id} ({index + 1}/{tier_count})")
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return completed

    def _tier_progress_logger(self, asset_id: str, tier_name: str):
        last_logged = {"value": 0}

        async def on_progress(percent: int) -> None:
            # Log every 25% so long encodes show signs of life
            if percent >= last_logged["value"] + 25 or percent == 100:
                last_logged["value"] = percent
                logger.info(f"  {asset_id} {tier_name}: {percent}%")

        return on_progress

    async def _upload_rendition(self, asset_id: str, rendition: RenditionOutput) -> None:
        """Upload segments first and the playlist last, then record the rendition row."""
        prefix = rendition_prefix(asset_id, rendition.name)
        for segment in rendition.segments:
            await self.object_store.put_file(f"{prefix}{segment.name}", segment, "video/MP2T")
        index_key = rendition_index_key(asset_id, rendition.name)
        await self.object_store.put_file(index_key, rendition.playlist, "application/vnd.apple.mpegurl")
        await self.store.upsert_rendition(
            asset_id,
            rendition.name,
            self.object_store.public_url(index_key),
            rendition.size_bytes,
        )

    async def _fail(self, run: _JobRun, error: Exception) -> None:
        asset_id = run.asset_id
        message = str(error) or type(error).__name__

        if isinstance(error, PipelineError):
            logger.error(f"Asset {asset_id} failed at {run.step.value}: {message}")
        else:
            logger.exception(f"Unexpected error processing asset {asset_id} at {run.step.value}")
            message = f"{type(error).__name__}: {message}"

        if isinstance(error, TranscodeFailure) and error.diagnostics:
            logger.error(f"ffmpeg output for {asset_id}:\n{error.diagnostics}")
            message = f"{message}\n{error.diagnostics}"

        error_text = truncate_error(message)
        try:
            await self.store.mark_failed(asset_id, error_text)
        except PersistenceFailure as e:
            # Job stays visibly TRANSCODING for an operator to inspect
            logger.error(f"Could not record failure for asset {asset_id}: {e}")

        await self._publish(asset_id, AssetStatus.FAILED, run.progress, error_text)
        send_alert_fire_and_forget(
            alert_job_failed(
                asset_id=asset_id,
                step=run.step.value,
                error=error_text,
                progress=run.progress,
                worker_id=self.worker_id,
            )
        )

    async def _log_skip(self, asset_id: str) -> None:
        try:
            job = await self.store.get_job(asset_id)
        except Exception as e:
            logger.warning(f"Skipping asset {asset_id}: claim refused and job lookup failed: {e}")
            return

        if job is None:
            logger.info(f"Skipping asset {asset_id}: no job exists")
        elif is_terminal(job["status"]):
            logger.info(f"Skipping asset {asset_id}: job already {job['status']}, ignoring redelivery")
        else:
            logger.info(f"Skipping asset {asset_id}: job is {job['status']} (worker {job.get('worker_id')})")

    async def _publish(self, asset_id: str, status: AssetStatus, progress: int, error: Optional[str] = None) -> None:
        if self.status_cache is None:
            return
        await self.status_cache.publish(asset_id, status, progress=progress, error=error)
