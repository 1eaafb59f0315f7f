"""
Worker health read model.

Derived purely from the job table: how many jobs wait, how many run, and
when a processing job last heartbeated.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from api.job_queue import JobQueue

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

# A worker counts as active if a processing job heartbeated this recently
ACTIVE_WINDOW = timedelta(minutes=5)
DEGRADED_PENDING_THRESHOLD = 5
UNHEALTHY_PENDING_THRESHOLD = 10


def derive_health_status(pending: int, is_active: bool) -> str:
    """Status precedence: unhealthy, then degraded, then healthy."""
    if pending > UNHEALTHY_PENDING_THRESHOLD and not is_active:
        return UNHEALTHY
    if pending > DEGRADED_PENDING_THRESHOLD:
        return DEGRADED
    return HEALTHY


@dataclass
class WorkerHealth:
    status: str
    timestamp: datetime
    pending_jobs: int = 0
    processing_jobs: int = 0
    is_active: bool = False
    last_seen: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def http_status(self) -> int:
        return 503 if self.status == UNHEALTHY else 200

    def to_dict(self) -> Dict[str, Any]:
        worker = {
            "pendingJobs": self.pending_jobs,
            "processingJobs": self.processing_jobs,
            "isActive": self.is_active,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
        }
        body: Dict[str, Any] = {"status": self.status, "timestamp": self.timestamp.isoformat(), **worker}
        body["worker"] = dict(worker)
        if self.error:
            body["error"] = self.error
        return body


async def get_worker_health(queue: JobQueue, now: Optional[datetime] = None) -> WorkerHealth:
    """Build the health snapshot. Any read error yields ``unhealthy``."""
    if now is None:
        now = datetime.now(timezone.utc)
    try:
        counts = await queue.count_by_status()
        last_seen = await queue.latest_processing()
    except Exception as e:
        logger.warning(f"Worker health check failed: {e}")
        return WorkerHealth(status=UNHEALTHY, timestamp=now, error="Health check failed")

    pending = counts.get("pending", 0)
    processing = counts.get("processing", 0)
    is_active = last_seen is not None and now - last_seen < ACTIVE_WINDOW

    return WorkerHealth(
        status=derive_health_status(pending, is_active),
        timestamp=now,
        pending_jobs=pending,
        processing_jobs=processing,
        is_active=is_active,
        last_seen=last_seen,
    )
