"""
Database-backed transcode job queue.

Every state change goes through compare_and_swap(), a single conditional
UPDATE ... WHERE id AND status AND worker_id ... RETURNING. The row comes back
only if the expected state still held, so two workers racing for the same
job can never both win, and a worker whose claim was reclaimed can never
write to a job it no longer holds.

Claims are ordered by priority (higher first), then by age (oldest first).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
from databases import Database

from api.common import ensure_utc, new_id
from api.database import transcode_jobs
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry, fetch_val_with_retry
from api.enums import JobStatus
from api.errors import DuplicateJobError, NotOwnerError, truncate_error
from api.job_state import JobStateMachine, validate_job_transition
from api.models import TranscodeJob

logger = logging.getLogger(__name__)

# How many pending candidates to try per claim round before re-querying
CLAIM_BATCH_SIZE = 10


@dataclass
class ReclaimOutcome:
    """What reclaim_stale() did with one abandoned job."""

    job_id: str
    media_asset_id: str
    previous_worker_id: Optional[str]
    attempt_count: int
    requeued: bool


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobQueue:
    """Transcode job queue over the transcode_jobs table."""

    def __init__(self, database: Database, max_attempts: int = 3, stale_threshold_seconds: int = 600) -> None:
        self.database = database
        self.max_attempts = max_attempts
        self.state = JobStateMachine(stale_threshold_seconds=stale_threshold_seconds, max_attempts=max_attempts)

    # =========================================================================
    # Conditional update primitive
    # =========================================================================

    async def compare_and_swap(
        self,
        job_id: str,
        expected_status: str,
        expected_worker: Optional[str],
        values: Dict[str, Any],
        extra_conditions: Sequence[Any] = (),
    ) -> Optional[TranscodeJob]:
        """
        Apply ``values`` to the job only if it is still in ``expected_status``
        and held by ``expected_worker`` (None means unheld).

        Returns the updated job, or None if the expected state no longer held.
        """
        if "status" in values:
            validate_job_transition(expected_status, values["status"])

        query = (
            transcode_jobs.update()
            .where(transcode_jobs.c.id == job_id)
            .where(transcode_jobs.c.status == expected_status)
        )
        if expected_worker is None:
            query = query.where(transcode_jobs.c.worker_id.is_(None))
        else:
            query = query.where(transcode_jobs.c.worker_id == expected_worker)
        for condition in extra_conditions:
            query = query.where(condition)

        query = query.values(**values).returning(*transcode_jobs.c)
        row = await fetch_one_with_retry(self.database, query)
        return TranscodeJob.from_row(row) if row else None

    # =========================================================================
    # Queue protocol
    # =========================================================================

    async def enqueue(self, asset_id: str, priority: int = 0) -> TranscodeJob:
        """
        Create a pending job for an asset.

        Raises:
            DuplicateJobError: if the asset already has a pending or processing job
        """
        existing = await fetch_one_with_retry(
            self.database,
            transcode_jobs.select()
            .where(transcode_jobs.c.media_asset_id == asset_id)
            .where(self.state.sql_active()),
        )
        if existing:
            raise DuplicateJobError(f"Asset {asset_id} already has an active transcode job")

        now = _now()
        job = TranscodeJob(
            id=new_id(),
            media_asset_id=asset_id,
            status=JobStatus.PENDING.value,
            priority=priority,
            worker_id=None,
            attempt_count=0,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        try:
            await db_execute_with_retry(self.database, transcode_jobs.insert().values(**job.to_values()))
        except Exception as e:
            # Partial unique index on active jobs catches a concurrent enqueue
            if "unique" in str(e).lower() or "duplicate" in str(e).lower():
                raise DuplicateJobError(f"Asset {asset_id} already has an active transcode job") from e
            raise

        logger.info(f"Enqueued job {job.id} for asset {asset_id} (priority={priority})")
        return job

    async def claim(self, worker_id: str) -> Optional[TranscodeJob]:
        """
        Claim the highest-priority, oldest pending job for ``worker_id``.

        Returns None if nothing is eligible.
        """
        while True:
            candidates = await fetch_all_with_retry(
                self.database,
                sa.select(transcode_jobs.c.id)
                .where(self.state.sql_claimable())
                .order_by(transcode_jobs.c.priority.desc(), transcode_jobs.c.created_at.asc())
                .limit(CLAIM_BATCH_SIZE),
            )
            if not candidates:
                return None

            for candidate in candidates:
                now = _now()
                job = await self.compare_and_swap(
                    candidate["id"],
                    JobStatus.PENDING.value,
                    None,
                    {
                        "status": JobStatus.PROCESSING.value,
                        "worker_id": worker_id,
                        "attempt_count": transcode_jobs.c.attempt_count + 1,
                        "progress": 0,
                        "updated_at": now,
                        "started_at": now,
                    },
                )
                if job is not None:
                    logger.info(f"Worker {worker_id} claimed job {job.id} (attempt {job.attempt_count})")
                    return job
            # Every candidate was taken by another worker; look again

    async def heartbeat(self, job_id: str, worker_id: str, progress: Optional[int] = None) -> TranscodeJob:
        """
        Refresh the claim on a job, optionally recording progress.

        Raises:
            NotOwnerError: if the job is no longer held by ``worker_id``
        """
        values: Dict[str, Any] = {"updated_at": _now()}
        if progress is not None:
            values["progress"] = max(0, min(100, int(progress)))

        job = await self.compare_and_swap(job_id, JobStatus.PROCESSING.value, worker_id, values)
        if job is None:
            raise NotOwnerError(job_id, worker_id)
        return job

    async def complete(self, job_id: str, worker_id: str) -> TranscodeJob:
        """Mark a held job completed. Raises NotOwnerError if no longer held."""
        now = _now()
        job = await self.compare_and_swap(
            job_id,
            JobStatus.PROCESSING.value,
            worker_id,
            {
                "status": JobStatus.COMPLETED.value,
                "progress": 100,
                "error_message": None,
                "updated_at": now,
                "completed_at": now,
            },
        )
        if job is None:
            raise NotOwnerError(job_id, worker_id)
        logger.info(f"Job {job_id} completed by worker {worker_id}")
        return job

    async def fail(self, job_id: str, worker_id: str, reason: str) -> TranscodeJob:
        """Mark a held job failed (terminal). Raises NotOwnerError if no longer held."""
        now = _now()
        job = await self.compare_and_swap(
            job_id,
            JobStatus.PROCESSING.value,
            worker_id,
            {
                "status": JobStatus.FAILED.value,
                "error_message": truncate_error(reason),
                "updated_at": now,
                "completed_at": now,
            },
        )
        if job is None:
            raise NotOwnerError(job_id, worker_id)
        logger.warning(f"Job {job_id} failed on worker {worker_id}: {reason}")
        return job

    async def reclaim_stale(self, threshold_seconds: Optional[int] = None) -> List[ReclaimOutcome]:
        """
        Reset abandoned processing jobs.

        Jobs whose heartbeat is older than the threshold go back to pending
        (worker cleared) while attempts remain, otherwise they fail. The
        caller is responsible for failing the asset of each non-requeued job.
        """
        state = self.state
        if threshold_seconds is not None:
            state = JobStateMachine(stale_threshold_seconds=threshold_seconds, max_attempts=self.max_attempts)

        now = _now()
        cutoff_condition = state.sql_stale(now)
        rows = await fetch_all_with_retry(self.database, transcode_jobs.select().where(cutoff_condition))

        outcomes: List[ReclaimOutcome] = []
        for row in rows:
            stale = TranscodeJob.from_row(row)
            requeue = state.reclaim_target(stale) == JobStatus.PENDING
            if requeue:
                values = {
                    "status": JobStatus.PENDING.value,
                    "worker_id": None,
                    "progress": 0,
                    "updated_at": now,
                }
            else:
                values = {
                    "status": JobStatus.FAILED.value,
                    "error_message": f"Exceeded max attempts ({self.max_attempts}) after worker stopped responding",
                    "updated_at": now,
                    "completed_at": now,
                }

            # Re-check staleness inside the update so a late heartbeat wins
            job = await self.compare_and_swap(
                stale.id,
                JobStatus.PROCESSING.value,
                stale.worker_id,
                values,
                extra_conditions=(cutoff_condition,),
            )
            if job is None:
                continue

            if requeue:
                logger.warning(
                    f"Reclaimed stale job {stale.id} from worker {stale.worker_id} "
                    f"(attempt {stale.attempt_count}/{self.max_attempts})"
                )
            else:
                logger.error(
                    f"Stale job {stale.id} failed permanently after {stale.attempt_count} attempts"
                )
            outcomes.append(
                ReclaimOutcome(
                    job_id=stale.id,
                    media_asset_id=stale.media_asset_id,
                    previous_worker_id=stale.worker_id,
                    attempt_count=stale.attempt_count,
                    requeued=requeue,
                )
            )

        return outcomes

    # =========================================================================
    # Read helpers
    # =========================================================================

    async def get(self, job_id: str) -> Optional[TranscodeJob]:
        row = await fetch_one_with_retry(self.database, transcode_jobs.select().where(transcode_jobs.c.id == job_id))
        return TranscodeJob.from_row(row) if row else None

    async def get_for_asset(self, asset_id: str) -> Optional[TranscodeJob]:
        """Most recent job for an asset."""
        row = await fetch_one_with_retry(
            self.database,
            transcode_jobs.select()
            .where(transcode_jobs.c.media_asset_id == asset_id)
            .order_by(transcode_jobs.c.created_at.desc())
            .limit(1),
        )
        return TranscodeJob.from_row(row) if row else None

    async def count_by_status(self) -> Dict[str, int]:
        rows = await fetch_all_with_retry(
            self.database,
            sa.select(transcode_jobs.c.status, sa.func.count().label("count")).group_by(transcode_jobs.c.status),
        )
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    async def latest_processing(self) -> Optional[datetime]:
        """Most recent heartbeat among processing jobs, or None if none are processing."""
        value = await fetch_val_with_retry(
            self.database,
            sa.select(sa.func.max(transcode_jobs.c.updated_at)).where(
                transcode_jobs.c.status == JobStatus.PROCESSING.value
            ),
        )
        return ensure_utc(value)
