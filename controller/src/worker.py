"""
Queue worker - pulls build events from Redis and schedules them.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from controller.src.config import get_settings
from controller.src.engine.scheduler import Scheduler
from controller.src.models.event import Event
from controller.src.models.step import Status
from controller.src.services import queue
from controller.src.services.cron import CronTicker, build_cron_event

logger = logging.getLogger(__name__)
settings = get_settings()

# Cancel requests kept for events that have not been dequeued yet
MAX_PENDING_CANCELS = 1000

def remember_cancel(pending: Dict[str, None], event_id: str):
    pending[event_id] = None
    while len(pending) > MAX_PENDING_CANCELS:
        pending.pop(next(iter(pending)))

async def run_build(scheduler: Scheduler, event: Event, cancelled: Optional[Dict[str, None]] = None):
    """Run one event to completion and publish the build status."""
    if cancelled is not None and event.id in cancelled:
        del cancelled[event.id]
        logger.info(f"Build {event.build_number} ({event.id}) was cancelled while queued")
        if scheduler.reporter is not None:
            await asyncio.to_thread(
                scheduler.reporter.build_updated, event, Status.CANCELLED.value, True
            )
        await queue.update_run_status(event.id, Status.CANCELLED.value)
        return

    try:
        runs = await scheduler.run(event)
    except Exception as e:
        logger.exception(f"Failed to execute build for event {event.id}: {e}")
        await queue.update_run_status(event.id, "failure")
        return

    if not runs:
        await queue.update_run_status(event.id, "skipped")
        return

    statuses = {run.status for run in runs}
    if Status.CANCELLED in statuses:
        status = Status.CANCELLED.value
    elif Status.FAILURE in statuses:
        status = Status.FAILURE.value
    else:
        status = Status.SUCCESS.value
    await queue.update_run_status(event.id, status)
    logger.info(f"Build {event.build_number} ({event.id}) finished with status: {status}")

async def enqueue_due_crons(ticker: CronTicker):
    for job in ticker.due():
        event = build_cron_event(job, await queue.next_build_number())
        logger.info(f"Cron {job.name} fired, queueing event {event.id}")
        await queue.enqueue_event(event)

async def worker_loop(scheduler: Scheduler):
    """Main worker loop."""
    logger.info("Worker started, waiting for events...")

    ticker = CronTicker(settings.crons)
    builds: Set[asyncio.Task] = set()
    cancelled: Dict[str, None] = {}

    while True:
        try:
            event = await queue.dequeue_event(timeout=1)

            if event:
                logger.info(f"Received {event.kind.value} event {event.id}")
                task = asyncio.create_task(run_build(scheduler, event, cancelled))
                builds.add(task)
                task.add_done_callback(builds.discard)

            for event_id in await queue.pop_cancel_requests():
                if not scheduler.cancel(event_id):
                    logger.info(f"Holding cancel request for event {event_id} until it is dequeued")
                    remember_cancel(cancelled, event_id)

            await enqueue_due_crons(ticker)

        except asyncio.CancelledError:
            logger.info("Worker shutting down...")
            for event_id in scheduler.active_events():
                scheduler.cancel(event_id)
            for task in builds:
                task.cancel()
            await asyncio.gather(*builds, return_exceptions=True)
            raise
        except Exception as e:
            logger.exception(f"Worker error: {e}")
            await asyncio.sleep(5)

def run_worker(scheduler: Scheduler):
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop(scheduler))
    except KeyboardInterrupt:
        logger.info("Worker stopped")
