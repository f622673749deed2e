#!/usr/bin/env python3
"""
Reelforge CLI - operator front-end for the transcode pipeline.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

import httpx
import psutil
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)

from config import (
    DATABASE_URL,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    LOG_LEVEL,
    PRESIGN_UPLOAD_TTL,
    WORKER_WORK_DIR,
)
from pipeline.database import create_tables, database
from pipeline.enums import AssetStatus, JobStatus
from pipeline.errors import PipelineError, truncate_error
from pipeline.job_queue import JobQueue
from pipeline.job_store import JobStore
from pipeline.object_store import ObjectStore, asset_prefixes
from pipeline.redis_client import RedisClient
from pipeline.status_cache import StatusCache

# Upload timeout in seconds (default 2 hours, configurable via environment)
UPLOAD_TIMEOUT = int(os.getenv("REELFORGE_UPLOAD_TIMEOUT", "7200"))

UPLOAD_CHUNK_SIZE = 1024 * 1024


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


class ProgressFileWrapper:
    """Wrapper for file objects that reports upload progress."""

    def __init__(self, file, progress, task_id):
        """
        Initialize the progress file wrapper.

        Args:
            file: The file object to wrap
            progress: The rich Progress instance
            task_id: The task ID from progress.add_task()
        """
        self.file = file
        self.progress = progress
        self.task_id = task_id

    def read(self, size=-1):
        """
        Read from the file and update progress.

        Empty reads at EOF don't advance progress as no bytes were transferred.
        """
        data = self.file.read(size)
        if data:
            self.progress.update(self.task_id, advance=len(data))
        return data

    def __iter__(self):
        return iter(lambda: self.read(UPLOAD_CHUNK_SIZE), b"")

    def seek(self, *args, **kwargs):
        """Forward seek to the underlying file (progress only advances on read)."""
        return self.file.seek(*args, **kwargs)

    def tell(self):
        """Forward tell to the underlying file."""
        return self.file.tell()

    def close(self):
        """Close method - does not close the underlying file as it's managed externally."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass


def validate_file(file_path):
    """
    Validate file exists and is readable.

    Args:
        file_path: Path object pointing to the file

    Returns:
        int: File size in bytes

    Raises:
        CLIError: If file doesn't exist, isn't readable, or is empty
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")

    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")

    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")

    # Single PUT uploads top out at 5 GB on S3-compatible stores
    if file_size > 5 * 1024 * 1024 * 1024:
        raise CLIError(f"File too large ({file_size / (1024**3):.2f} GB). Maximum single upload is 5 GB")

    return file_size


def check_response(response, default_error="Request failed"):
    """
    Raise CLIError for a non-2xx response from the object store.

    S3-compatible stores answer with an XML error body; only a truncated copy
    is shown.
    """
    if response.is_success:
        return
    detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
    raise CLIError(f"Upload rejected ({response.status_code}): {detail}")


def _fail(message: str):
    print(f"Error: {message}")
    sys.exit(1)


def _run(coro):
    """Run a command coroutine, turning expected errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except (CLIError, PipelineError) as e:
        _fail(str(e))


class Services:
    """Connections a command needs, opened and closed around it."""

    def __init__(self, use_redis: bool = False):
        self.use_redis = use_redis
        self.store = JobStore(database)
        self.redis_client = RedisClient() if use_redis else None
        self.queue = JobQueue(self.redis_client) if use_redis else None
        self.status_cache = StatusCache(self.redis_client) if use_redis else None

    async def __aenter__(self):
        await database.connect()
        if self.redis_client is not None:
            await self.redis_client.connect()
        return self

    async def __aexit__(self, *exc):
        if self.redis_client is not None:
            await self.redis_client.close()
        await database.disconnect()


# =============================================================================
# Commands
# =============================================================================


def cmd_init_db(args):
    """Create tables directly from metadata (development and tests)."""
    create_tables(DATABASE_URL)
    print(f"Tables created in {DATABASE_URL.split('@')[-1]}")
    print("Production deployments should run: alembic upgrade head")


def cmd_create(args):
    """Create a DRAFT asset and print an upload grant for it."""

    async def run():
        async with Services() as services:
            asset_id = await services.store.create_asset(args.title, owner_id=args.owner)
        grant = ObjectStore().presign_upload(asset_id, ttl=args.ttl)
        print(f"Created asset {asset_id} (DRAFT)")
        print(f"  Upload with: PUT {grant['url']}")
        print(f"  Expires in: {grant['expires_in']}s")

    _run(run())


def cmd_presign(args):
    """Print a presigned PUT URL for an asset's source object."""
    try:
        grant = ObjectStore().presign_upload(args.asset_id, ttl=args.ttl)
    except PipelineError as e:
        _fail(str(e))
    print(grant["url"])


def cmd_upload(args):
    """Upload a local source file to an asset through a presigned PUT."""
    try:
        file_path = Path(args.file)
        file_size = validate_file(file_path)
        grant = ObjectStore().presign_upload(args.asset_id)

        print(f"Uploading: {file_path.name} -> {grant['key']}")

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            FileSizeColumn(),
            TextColumn("/"),
            TotalFileSizeColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
        ) as progress:
            task_id = progress.add_task("Uploading...", total=file_size)

            with open(file_path, "rb") as f:
                wrapped_file = ProgressFileWrapper(f, progress, task_id)
                with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                    response = client.put(
                        grant["url"],
                        content=wrapped_file,
                        headers={"Content-Length": str(file_size), **grant["headers"]},
                    )

        check_response(response)
        print("Upload complete. Run 'reelforge enqueue' to start transcoding.")

    except httpx.ConnectError:
        _fail("Could not connect to object storage")
    except httpx.TimeoutException:
        _fail(f"Upload timed out (exceeded {UPLOAD_TIMEOUT}s timeout)")
    except (CLIError, PipelineError) as e:
        _fail(str(e))


def cmd_enqueue(args):
    """Confirm the upload (DRAFT -> UPLOADED) and queue the transcode job."""

    async def run():
        async with Services(use_redis=True) as services:
            job = await services.store.confirm_upload(args.asset_id)
            await services.queue.enqueue(args.asset_id)
            await services.status_cache.publish(args.asset_id, AssetStatus.UPLOADED, progress=job["progress"])
        print(f"Queued asset {args.asset_id} for transcoding")

    _run(run())


def cmd_retry(args):
    """Reset a FAILED asset and queue it again."""

    async def run():
        async with Services(use_redis=True) as services:
            await services.store.reset_for_retry(args.asset_id)
            if args.purge:
                removed = await ObjectStore().delete(f"hls/{args.asset_id}/")
                print(f"Removed {removed} objects from the previous attempt")
            await services.queue.enqueue(args.asset_id)
            await services.status_cache.publish(args.asset_id, AssetStatus.UPLOADED, progress=0)
        print(f"Asset {args.asset_id} queued for retry")

    _run(run())


def _print_asset(asset, job, renditions, snapshot):
    print(f"Asset {asset['id']}")
    print(f"  Title:     {asset['title']}")
    print(f"  Status:    {asset['status']}")
    if asset["duration"]:
        print(f"  Source:    {asset['source_width']}x{asset['source_height']}, {asset['duration']:.1f}s")
    print(f"  Manifest:  {asset['manifest_url'] or '-'}")
    print(f"  Thumbnail: {asset['thumbnail_url'] or '-'}")
    if job:
        print(f"  Job:       {job['status']} {job['progress']}% (worker {job['worker_id'] or '-'})")
        if job["error"]:
            print(f"  Error:     {truncate_error(job['error'], ERROR_DETAIL_MAX_LENGTH)}")
    if renditions:
        print("  Renditions:")
        for r in renditions:
            print(f"    {r['quality']:<6} {r['size_bytes'] / (1024 * 1024):>8.1f} MB  {r['index_url']}")
    if snapshot:
        print(f"  Cached:    {snapshot['status']} {snapshot['progress']}% at {snapshot['updated_at']}")


def cmd_status(args):
    """Show one asset in detail, or a summary of recent jobs."""

    async def run():
        async with Services(use_redis=True) as services:
            if args.asset_id:
                asset = await services.store.get_asset(args.asset_id)
                if asset is None:
                    raise CLIError(f"Asset {args.asset_id} not found")
                job = await services.store.get_job(args.asset_id)
                renditions = await services.store.list_renditions(args.asset_id)
                snapshot = await services.status_cache.get(args.asset_id)
                _print_asset(asset, job, renditions, snapshot)
                return

            status = JobStatus(args.status) if args.status else None
            jobs = await services.store.list_jobs(status=status, limit=args.limit)
            try:
                depth = await services.queue.length()
            except PipelineError:
                depth = None

        print(f"Queue depth: {depth if depth is not None else 'unavailable'}")
        disk = psutil.disk_usage(str(WORKER_WORK_DIR)) if WORKER_WORK_DIR.exists() else None
        if disk is not None:
            print(f"Work dir:    {WORKER_WORK_DIR} ({disk.free / (1024**3):.1f} GB free)")
        print()
        if not jobs:
            print("No jobs found.")
            return
        print(f"{'Asset':<38} {'Status':<12} {'Progress':>8}  {'Title':<30} {'Error'}")
        print("-" * 110)
        for j in jobs:
            title = j["title"][:28] + ".." if len(j["title"]) > 30 else j["title"]
            error = truncate_error(j["error"], ERROR_SUMMARY_MAX_LENGTH) if j["error"] else ""
            error = error.replace("\n", " ")
            print(f"{j['asset_id']:<38} {j['status']:<12} {j['progress']:>7}%  {title:<30} {error}")

    _run(run())


def cmd_purge(args):
    """Delete an asset's rendered objects (and optionally its source) from storage."""

    async def run():
        store = ObjectStore()
        prefixes = asset_prefixes(args.asset_id)
        if not args.include_source:
            prefixes = [p for p in prefixes if not p.startswith("original/")]
        total = 0
        for prefix in prefixes:
            total += await store.delete(prefix)
        print(f"Deleted {total} objects for asset {args.asset_id}")

    _run(run())


def cmd_worker(args):
    """Run a transcode worker in the foreground."""
    from worker.runner import WorkerState, run_worker

    asyncio.run(run_worker(WorkerState(worker_id=args.id)))


def main(argv=None):
    parser = argparse.ArgumentParser(prog="reelforge", description="Reelforge - video transcode pipeline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables from metadata")
    init_parser.set_defaults(func=cmd_init_db)

    create_parser = subparsers.add_parser("create", help="Create a DRAFT asset and an upload grant")
    create_parser.add_argument("title", help="Asset title")
    create_parser.add_argument("--owner", help="Owner id")
    create_parser.add_argument("--ttl", type=positive_int, default=PRESIGN_UPLOAD_TTL, help="Grant lifetime (s)")
    create_parser.set_defaults(func=cmd_create)

    presign_parser = subparsers.add_parser("presign", help="Print a presigned upload URL for an asset")
    presign_parser.add_argument("asset_id", help="Asset ID")
    presign_parser.add_argument("--ttl", type=positive_int, default=PRESIGN_UPLOAD_TTL, help="URL lifetime (s)")
    presign_parser.set_defaults(func=cmd_presign)

    upload_parser = subparsers.add_parser("upload", help="Upload a source file for an asset")
    upload_parser.add_argument("asset_id", help="Asset ID")
    upload_parser.add_argument("file", help="Video file to upload")
    upload_parser.set_defaults(func=cmd_upload)

    enqueue_parser = subparsers.add_parser("enqueue", help="Confirm an upload and queue it for transcoding")
    enqueue_parser.add_argument("asset_id", help="Asset ID")
    enqueue_parser.set_defaults(func=cmd_enqueue)

    retry_parser = subparsers.add_parser("retry", help="Reset a FAILED asset and queue it again")
    retry_parser.add_argument("asset_id", help="Asset ID")
    retry_parser.add_argument("--purge", action="store_true", help="Delete HLS output from the failed attempt first")
    retry_parser.set_defaults(func=cmd_retry)

    status_parser = subparsers.add_parser("status", help="Show asset or job status")
    status_parser.add_argument("asset_id", nargs="?", help="Asset ID (omit for a job summary)")
    status_parser.add_argument("-s", "--status", choices=[s.value for s in JobStatus], help="Filter by job status")
    status_parser.add_argument("-n", "--limit", type=positive_int, default=50, help="Maximum jobs to list")
    status_parser.set_defaults(func=cmd_status)

    purge_parser = subparsers.add_parser("purge", help="Delete an asset's objects from storage")
    purge_parser.add_argument("asset_id", help="Asset ID")
    purge_parser.add_argument("--include-source", action="store_true", help="Also delete the uploaded source")
    purge_parser.set_defaults(func=cmd_purge)

    worker_parser = subparsers.add_parser("worker", help="Run a transcode worker")
    worker_parser.add_argument("--id", help="Worker ID (default: generated)")
    worker_parser.set_defaults(func=cmd_worker)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args.func(args)


if __name__ == "__main__":
    main()
