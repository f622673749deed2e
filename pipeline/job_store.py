"""
Job store: the authoritative record of assets, transcode jobs and renditions.

All multi-row changes run inside a single database transaction, wrapped in
execute_with_retry so transient lock contention is retried. Any other
database error surfaces as PersistenceFailure.

Status changes are checked against pipeline.job_state before they are
written. Progress writes carry a "progress <= new value" predicate so a
stale or out-of-order update can never move a job backwards.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import sqlalchemy as sa
from databases import Database

from pipeline.database import assets, renditions, transcode_jobs
from pipeline.db_retry import execute_with_retry
from pipeline.enums import AssetStatus, JobStatus
from pipeline.errors import AssetNotFound, PersistenceFailure, PipelineError, truncate_error
from pipeline.job_state import validate_transition

logger = logging.getLogger(__name__)


class JobStore:
    """Transactional access to the assets, transcode_jobs and renditions tables."""

    def __init__(self, database: Database):
        self.database = database

    async def _run(self, fn: Callable[[], Any], action: str) -> Any:
        """Run fn with retry, turning database errors into PersistenceFailure."""
        try:
            return await execute_with_retry(fn, operation=f"Job store {action}")
        except PipelineError:
            raise
        except Exception as e:
            logger.error(f"Job store {action} failed: {e}")
            raise PersistenceFailure(f"{action} failed: {truncate_error(str(e))}") from e

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_asset(self, asset_id: str) -> Optional[Dict[str, Any]]:
        row = await self.database.fetch_one(assets.select().where(assets.c.id == asset_id))
        return dict(row) if row else None

    async def get_job(self, asset_id: str) -> Optional[Dict[str, Any]]:
        row = await self.database.fetch_one(transcode_jobs.select().where(transcode_jobs.c.asset_id == asset_id))
        return dict(row) if row else None

    async def list_renditions(self, asset_id: str) -> List[Dict[str, Any]]:
        rows = await self.database.fetch_all(
            renditions.select().where(renditions.c.asset_id == asset_id).order_by(renditions.c.created_at)
        )
        return [dict(row) for row in rows]

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent jobs joined with their asset title, newest first."""
        query = (
            sa.select(
                transcode_jobs.c.asset_id,
                transcode_jobs.c.status,
                transcode_jobs.c.progress,
                transcode_jobs.c.error,
                transcode_jobs.c.worker_id,
                transcode_jobs.c.created_at,
                transcode_jobs.c.completed_at,
                assets.c.title,
            )
            .select_from(transcode_jobs.join(assets, transcode_jobs.c.asset_id == assets.c.id))
            .order_by(transcode_jobs.c.created_at.desc())
            .limit(limit)
        )
        if status is not None:
            query = query.where(transcode_jobs.c.status == status.value)
        rows = await self.database.fetch_all(query)
        return [dict(row) for row in rows]

    # =========================================================================
    # Producer side
    # =========================================================================

    async def create_asset(self, title: str, owner_id: Optional[str] = None, asset_id: Optional[str] = None) -> str:
        """Insert a DRAFT asset and return its id."""
        asset_id = asset_id or str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        async def do_insert():
            await self.database.execute(
                assets.insert().values(
                    id=asset_id,
                    owner_id=owner_id,
                    title=title,
                    status=AssetStatus.DRAFT.value,
                    view_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )

        await self._run(do_insert, "create_asset")
        return asset_id

    async def confirm_upload(self, asset_id: str) -> Dict[str, Any]:
        """
        Mark a DRAFT asset UPLOADED and create its transcode job row.

        Calling this again for an asset that is already UPLOADED with an
        UPLOADED job returns the existing job unchanged.

        Raises:
            AssetNotFound: No such asset
            InvalidTransition: The asset is past UPLOADED (use reset_for_retry for FAILED)
        """
        result: Dict[str, Any] = {"job": None}

        async def do_confirm_transaction():
            async with self.database.transaction():
                asset = await self.database.fetch_one(
                    assets.select().where(assets.c.id == asset_id).with_for_update()
                )
                if asset is None:
                    raise AssetNotFound(f"Asset {asset_id} not found")

                job = await self.database.fetch_one(
                    transcode_jobs.select().where(transcode_jobs.c.asset_id == asset_id)
                )
                if (
                    asset["status"] == AssetStatus.UPLOADED.value
                    and job is not None
                    and job["status"] == JobStatus.UPLOADED.value
                ):
                    result["job"] = dict(job)
                    return

                validate_transition(asset["status"], AssetStatus.UPLOADED)
                now = datetime.now(timezone.utc)
                await self.database.execute(
                    assets.update()
                    .where(assets.c.id == asset_id)
                    .values(status=AssetStatus.UPLOADED.value, error_message=None, updated_at=now)
                )
                if job is None:
                    await self.database.execute(
                        transcode_jobs.insert().values(
                            id=str(uuid.uuid4()),
                            asset_id=asset_id,
                            status=JobStatus.UPLOADED.value,
                            progress=0,
                            created_at=now,
                        )
                    )
                row = await self.database.fetch_one(
                    transcode_jobs.select().where(transcode_jobs.c.asset_id == asset_id)
                )
                result["job"] = dict(row)

        await self._run(do_confirm_transaction, "confirm_upload")
        return result["job"]

    async def reset_for_retry(self, asset_id: str) -> Dict[str, Any]:
        """
        Put a FAILED asset and its job back to UPLOADED for another attempt.

        The job row is reused (one job per asset). Error, progress, timestamps,
        URLs and rendition rows from the failed attempt are cleared.

        Raises:
            AssetNotFound: No asset or job row
            InvalidTransition: The job is not FAILED
        """
        result: Dict[str, Any] = {"job": None}

        async def do_reset_transaction():
            async with self.database.transaction():
                job = await self.database.fetch_one(
                    transcode_jobs.select().where(transcode_jobs.c.asset_id == asset_id).with_for_update()
                )
                if job is None:
                    raise AssetNotFound(f"No transcode job for asset {asset_id}")
                validate_transition(job["status"], JobStatus.UPLOADED)

                now = datetime.now(timezone.utc)
                await self.database.execute(
                    transcode_jobs.update()
                    .where(transcode_jobs.c.id == job["id"])
                    .values(
                        status=JobStatus.UPLOADED.value,
                        progress=0,
                        error=None,
                        worker_id=None,
                        started_at=None,
                        completed_at=None,
                    )
                )
                await self.database.execute(
                    assets.update()
                    .where(assets.c.id == asset_id)
                    .values(
                        status=AssetStatus.UPLOADED.value,
                        manifest_url=None,
                        thumbnail_url=None,
                        error_message=None,
                        updated_at=now,
                    )
                )
                await self.database.execute(renditions.delete().where(renditions.c.asset_id == asset_id))
                row = await self.database.fetch_one(transcode_jobs.select().where(transcode_jobs.c.id == job["id"]))
                result["job"] = dict(row)

        await self._run(do_reset_transaction, "reset_for_retry")
        logger.info(f"Asset {asset_id} reset for retry")
        return result["job"]

    # =========================================================================
    # Processor side
    # =========================================================================

    async def claim_job(self, asset_id: str, worker_id: str, initial_progress: int = 10) -> Optional[Dict[str, Any]]:
        """
        Atomically move the asset's job from UPLOADED to TRANSCODING.

        The job row is locked for the duration of the transaction (FOR UPDATE on
        PostgreSQL; SQLite serializes writers on its own).

        Returns:
            The claimed job row, or None if there is no job or it is not UPLOADED
        """
        result: Dict[str, Any] = {"job": None}

        async def do_claim_transaction():
            async with self.database.transaction():
                job = await self.database.fetch_one(
                    transcode_jobs.select().where(transcode_jobs.c.asset_id == asset_id).with_for_update()
                )
                if job is None or job["status"] != JobStatus.UPLOADED.value:
                    result["job"] = None
                    return

                validate_transition(job["status"], JobStatus.TRANSCODING)
                now = datetime.now(timezone.utc)
                await self.database.execute(
                    transcode_jobs.update()
                    .where(transcode_jobs.c.id == job["id"])
                    .values(
                        status=JobStatus.TRANSCODING.value,
                        progress=initial_progress,
                        worker_id=worker_id,
                        started_at=now,
                        completed_at=None,
                        error=None,
                    )
                )
                await self.database.execute(
                    assets.update()
                    .where(assets.c.id == asset_id)
                    .values(status=AssetStatus.TRANSCODING.value, updated_at=now)
                )
                row = await self.database.fetch_one(transcode_jobs.select().where(transcode_jobs.c.id == job["id"]))
                result["job"] = dict(row)

        await self._run(do_claim_transaction, "claim_job")
        return result["job"]

    async def update_progress(self, asset_id: str, progress: int) -> None:
        """
        Raise a TRANSCODING job's progress to the given value.

        Lower values than the stored progress are ignored by the UPDATE predicate.
        """
        progress = max(0, min(100, int(progress)))

        async def do_update():
            await self.database.execute(
                transcode_jobs.update()
                .where(transcode_jobs.c.asset_id == asset_id)
                .where(transcode_jobs.c.status == JobStatus.TRANSCODING.value)
                .where(transcode_jobs.c.progress <= progress)
                .values(progress=progress)
            )

        await self._run(do_update, "update_progress")

    async def record_source_metadata(self, asset_id: str, duration: float, width: int, height: int) -> None:
        async def do_update():
            await self.database.execute(
                assets.update()
                .where(assets.c.id == asset_id)
                .values(
                    duration=duration,
                    source_width=width,
                    source_height=height,
                    updated_at=datetime.now(timezone.utc),
                )
            )

        await self._run(do_update, "record_source_metadata")

    async def upsert_rendition(self, asset_id: str, quality: str, index_url: str, size_bytes: int) -> None:
        """Insert the rendition row for (asset, quality) or overwrite the existing one."""

        async def do_upsert_transaction():
            async with self.database.transaction():
                existing = await self.database.fetch_one(
                    renditions.select()
                    .where(renditions.c.asset_id == asset_id)
                    .where(renditions.c.quality == quality)
                )
                if existing:
                    await self.database.execute(
                        renditions.update()
                        .where(renditions.c.id == existing["id"])
                        .values(index_url=index_url, size_bytes=size_bytes)
                    )
                else:
                    await self.database.execute(
                        renditions.insert().values(
                            id=str(uuid.uuid4()),
                            asset_id=asset_id,
                            quality=quality,
                            index_url=index_url,
                            size_bytes=size_bytes,
                            created_at=datetime.now(timezone.utc),
                        )
                    )

        await self._run(do_upsert_transaction, "upsert_rendition")

    async def mark_ready(self, asset_id: str, manifest_url: str, thumbnail_url: Optional[str]) -> None:
        """Publish the asset: asset READY with its URLs, job READY at 100%, in one transaction."""

        async def do_complete_transaction():
            async with self.database.transaction():
                job = await self.database.fetch_one(
                    transcode_jobs.select().where(transcode_jobs.c.asset_id == asset_id).with_for_update()
                )
                if job is None:
                    raise AssetNotFound(f"No transcode job for asset {asset_id}")
                validate_transition(job["status"], JobStatus.READY)

                now = datetime.now(timezone.utc)
                await self.database.execute(
                    transcode_jobs.update()
                    .where(transcode_jobs.c.id == job["id"])
                    .values(status=JobStatus.READY.value, progress=100, error=None, completed_at=now)
                )
                await self.database.execute(
                    assets.update()
                    .where(assets.c.id == asset_id)
                    .values(
                        status=AssetStatus.READY.value,
                        manifest_url=manifest_url,
                        thumbnail_url=thumbnail_url,
                        error_message=None,
                        updated_at=now,
                    )
                )

        await self._run(do_complete_transaction, "mark_ready")

    async def mark_failed(self, asset_id: str, error: str) -> None:
        """
        Fail the job and the asset in one transaction.

        The job keeps the progress it reached. Both asset URLs are cleared.
        Jobs that are not TRANSCODING are left untouched.
        """
        error_text = truncate_error(error or "Unknown error")

        async def do_fail_transaction():
            async with self.database.transaction():
                job = await self.database.fetch_one(
                    transcode_jobs.select().where(transcode_jobs.c.asset_id == asset_id).with_for_update()
                )
                if job is None or job["status"] != JobStatus.TRANSCODING.value:
                    logger.warning(f"Not failing asset {asset_id}: job is {job['status'] if job else 'missing'}")
                    return

                now = datetime.now(timezone.utc)
                await self.database.execute(
                    transcode_jobs.update()
                    .where(transcode_jobs.c.id == job["id"])
                    .values(status=JobStatus.FAILED.value, error=error_text, completed_at=now)
                )
                await self.database.execute(
                    assets.update()
                    .where(assets.c.id == asset_id)
                    .values(
                        status=AssetStatus.FAILED.value,
                        error_message=error_text,
                        manifest_url=None,
                        thumbnail_url=None,
                        updated_at=now,
                    )
                )

        await self._run(do_fail_transaction, "mark_failed")
