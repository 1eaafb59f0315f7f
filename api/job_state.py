"""
Transcode job and media asset state machines.

Makes the allowed transitions explicit instead of leaving them implicit in
UPDATE statements scattered around the code base.

Job state transition diagram:

    PENDING ──> PROCESSING ──> COMPLETED
                    │    │
                    │    └────> FAILED
                    │
                    └──> PENDING   (stale reclaim, attempts remaining)

Asset state transition diagram:

    UPLOADING ──> PROCESSING ──> READY | FAILED     (video)
    UPLOADING ──> READY                             (image, audio, file)
    UPLOADING ──> FAILED

Terminal states never change.

Usage:
    from api.job_state import JobStateMachine

    machine = JobStateMachine(stale_threshold_seconds=600)
    query = transcode_jobs.select().where(machine.sql_stale())
    target = machine.reclaim_target(job)

Note: predicates are point-in-time and advisory. Transitions themselves are
made safe by JobQueue.compare_and_swap(), which re-checks the expected state
inside the UPDATE.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, Optional

from api.database import transcode_jobs
from api.enums import AssetStatus, JobStatus
from api.models import TranscodeJob

logger = logging.getLogger(__name__)

JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

ASSET_TRANSITIONS: Dict[AssetStatus, FrozenSet[AssetStatus]] = {
    AssetStatus.UPLOADING: frozenset({AssetStatus.PROCESSING, AssetStatus.READY, AssetStatus.FAILED}),
    AssetStatus.PROCESSING: frozenset({AssetStatus.READY, AssetStatus.FAILED}),
    AssetStatus.READY: frozenset(),
    AssetStatus.FAILED: frozenset(),
}

ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


def can_transition_job(current: str, target: str) -> bool:
    """Return True if a job may move from ``current`` to ``target``."""
    return JobStatus(target) in JOB_TRANSITIONS[JobStatus(current)]


def can_transition_asset(current: str, target: str) -> bool:
    """Return True if an asset may move from ``current`` to ``target``."""
    return AssetStatus(target) in ASSET_TRANSITIONS[AssetStatus(current)]


def validate_job_transition(current: str, target: str) -> None:
    """Raise ValueError for a transition the job state machine does not allow."""
    if not can_transition_job(current, target):
        raise ValueError(f"Invalid job transition: {current} -> {target}")


def previous_asset_statuses(target: str) -> FrozenSet[str]:
    """All asset statuses from which ``target`` is reachable in one step."""
    return frozenset(s.value for s in AssetStatus if can_transition_asset(s.value, target))


class JobStateMachine:
    """
    State predicates and SQL conditions for transcode jobs.

    Stateless apart from the staleness window; all methods are pure.
    """

    def __init__(self, stale_threshold_seconds: int = 600, max_attempts: int = 3) -> None:
        self.stale_threshold = timedelta(seconds=stale_threshold_seconds)
        self.max_attempts = max_attempts

    def has_attempts_remaining(self, job: TranscodeJob) -> bool:
        return job.attempt_count < self.max_attempts

    def reclaim_target(self, job: TranscodeJob) -> JobStatus:
        """Where a stale job goes: back to pending, or failed when out of attempts."""
        return JobStatus.PENDING if self.has_attempts_remaining(job) else JobStatus.FAILED

    # =========================================================================
    # SQL conditions for query composition
    # =========================================================================

    def sql_claimable(self):
        return transcode_jobs.c.status == JobStatus.PENDING.value

    def sql_active(self):
        return transcode_jobs.c.status.in_(ACTIVE_JOB_STATUSES)

    def sql_stale(self, current_time: Optional[datetime] = None):
        if current_time is None:
            current_time = datetime.now(timezone.utc)
        cutoff = current_time - self.stale_threshold
        return (transcode_jobs.c.status == JobStatus.PROCESSING.value) & (transcode_jobs.c.updated_at < cutoff)
