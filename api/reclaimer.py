"""
Stale job recovery.

Runs inside the API process. Jobs whose worker stopped heartbeating go back
to pending while attempts remain; jobs out of attempts fail, and their asset
fails with them and emits media.failed.
"""

import asyncio
import logging
from typing import List, Optional

from databases import Database

from api import assets as asset_store
from api.enums import WebhookEvent
from api.job_queue import JobQueue, ReclaimOutcome
from api.webhook_service import WebhookDispatcher

logger = logging.getLogger(__name__)

ABANDONED_REASON = "Processing failed after the maximum number of attempts"


async def reclaim_stale_jobs(
    database: Database,
    queue: JobQueue,
    dispatcher: WebhookDispatcher,
    threshold_seconds: Optional[int] = None,
) -> List[ReclaimOutcome]:
    """One recovery pass. Returns what happened to each stale job."""
    outcomes = await queue.reclaim_stale(threshold_seconds)

    for outcome in outcomes:
        if outcome.requeued:
            continue
        asset = await asset_store.fail_asset(database, outcome.media_asset_id, ABANDONED_REASON)
        if asset is None:
            continue
        await dispatcher.dispatch(
            asset.owner_id,
            WebhookEvent.MEDIA_FAILED.value,
            {
                "id": asset.id,
                "type": asset.media_kind,
                "title": asset.title,
                "status": asset.status,
                "error": asset.error_message,
                "metadata": asset.custom_metadata,
            },
        )

    if outcomes:
        requeued = sum(1 for o in outcomes if o.requeued)
        logger.info(f"Stale job check: {requeued} requeued, {len(outcomes) - requeued} failed")
    return outcomes


class StaleJobReclaimer:
    """Background task running reclaim_stale_jobs() every ``interval`` seconds."""

    def __init__(self, database: Database, queue: JobQueue, dispatcher: WebhookDispatcher, interval: float) -> None:
        self.database = database
        self.queue = queue
        self.dispatcher = dispatcher
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def _loop(self) -> None:
        logger.info(f"Stale job reclaimer started (every {self.interval}s)")
        while True:
            try:
                await asyncio.sleep(self.interval)
                await reclaim_stale_jobs(self.database, self.queue, self.dispatcher)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in stale job reclaimer: {e}")
        logger.info("Stale job reclaimer stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
        self._task = None
