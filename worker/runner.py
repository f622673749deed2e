#!/usr/bin/env python3
"""
Transcode worker entry point.

Blocks on the job queue with a bounded timeout and hands each asset id to the
processor, one job at a time. SIGINT/SIGTERM request a graceful stop: the job
in flight runs to completion and the loop exits at the next poll boundary.
"""

import asyncio
import logging
import signal
import uuid
from typing import Optional

import psutil

from config import (
    LOG_LEVEL,
    QUALITY_TIERS,
    QUEUE_ERROR_BACKOFF,
    QUEUE_POLL_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    WORKER_MIN_FREE_DISK_MB,
    WORKER_WORK_DIR,
)
from pipeline.database import database
from pipeline.errors import QueueUnavailable
from pipeline.job_queue import JobQueue
from pipeline.job_store import JobStore
from pipeline.object_store import ObjectStore
from pipeline.redis_client import RedisClient
from pipeline.status_cache import StatusCache
from worker.alerts import alert_worker_shutdown, alert_worker_startup, send_alert_fire_and_forget
from worker.processor import TranscodeProcessor
from worker.transcoder import Transcoder

logger = logging.getLogger(__name__)


class WorkerState:
    """
    Mutable state for one worker instance.

    Owned by the loop and handed to the processor; nothing here is module
    global, so tests can run several workers side by side.
    """

    def __init__(self, worker_id: Optional[str] = None):
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.shutdown_event = asyncio.Event()
        self.current_asset_id: Optional[str] = None
        self.jobs_processed = 0
        self.jobs_succeeded = 0

    @property
    def shutdown_requested(self) -> bool:
        return self.shutdown_event.is_set()

    def request_shutdown(self):
        """Request graceful shutdown of the worker."""
        if not self.shutdown_event.is_set():
            logger.info("Shutdown requested, finishing current job before exiting")
        self.shutdown_event.set()

    async def wait_for_shutdown(self, timeout: float) -> bool:
        """Sleep up to timeout seconds, waking early on shutdown. Returns True if shutdown was requested."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.shutdown_requested


def install_signal_handlers(state: WorkerState) -> None:
    """Route SIGINT and SIGTERM to state.request_shutdown."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, state.request_shutdown)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda signum, frame: state.request_shutdown())


def check_work_dir_space() -> None:
    """Warn when the work directory is short on disk space."""
    WORKER_WORK_DIR.mkdir(parents=True, exist_ok=True)
    usage = psutil.disk_usage(str(WORKER_WORK_DIR))
    free_mb = usage.free // (1024 * 1024)
    if free_mb < WORKER_MIN_FREE_DISK_MB:
        logger.warning(
            f"Only {free_mb} MB free in {WORKER_WORK_DIR} (recommended minimum {WORKER_MIN_FREE_DISK_MB} MB)"
        )


async def worker_loop(
    state: WorkerState,
    queue: JobQueue,
    processor: TranscodeProcessor,
    poll_timeout: int = QUEUE_POLL_TIMEOUT,
    error_backoff: float = QUEUE_ERROR_BACKOFF,
) -> None:
    """
    Poll the queue until shutdown is requested.

    A dequeue timeout is not an error and touches nothing. An unavailable
    queue is logged and retried after error_backoff seconds.
    """
    while not state.shutdown_requested:
        try:
            asset_id = await queue.dequeue(timeout=poll_timeout)
        except QueueUnavailable as e:
            logger.warning(f"Job queue unavailable, retrying in {error_backoff:.0f}s: {e}")
            await state.wait_for_shutdown(error_backoff)
            continue

        if asset_id is None:
            continue

        state.current_asset_id = asset_id
        try:
            if await processor.process(asset_id):
                state.jobs_succeeded += 1
        except Exception:
            # process() records its own failures; this only guards the loop
            logger.exception(f"Unhandled error while processing asset {asset_id}")
        finally:
            state.current_asset_id = None
            state.jobs_processed += 1

    logger.info("Worker loop stopped")


async def run_worker(state: Optional[WorkerState] = None) -> None:
    """Connect to the database, Redis and object storage, then run the loop until shutdown."""
    state = state or WorkerState()
    install_signal_handlers(state)

    await database.connect()
    # A blocking pop holds the socket for up to the poll timeout
    redis_client = RedisClient(socket_timeout=REDIS_SOCKET_TIMEOUT + QUEUE_POLL_TIMEOUT)
    await redis_client.connect()
    if redis_client.is_configured and not redis_client.is_available:
        logger.warning("Redis unreachable at startup, jobs will be picked up once it recovers")

    queue = JobQueue(redis_client)
    processor = TranscodeProcessor(
        store=JobStore(database),
        object_store=ObjectStore(),
        transcoder=Transcoder(),
        status_cache=StatusCache(redis_client),
        state=state,
    )

    tier_names = [tier["name"] for tier in QUALITY_TIERS]
    logger.info(f"Transcode worker started (ID: {state.worker_id}, tiers: {', '.join(tier_names) or 'none'})")
    check_work_dir_space()
    send_alert_fire_and_forget(alert_worker_startup(worker_id=state.worker_id, tiers=tier_names))

    try:
        await worker_loop(state, queue, processor)
    finally:
        try:
            await alert_worker_shutdown(worker_id=state.worker_id, jobs_processed=state.jobs_processed)
        except Exception as e:
            logger.debug(f"Shutdown alert not sent: {e}")
        await redis_client.close()
        await database.disconnect()
        logger.info("Worker stopped gracefully.")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
