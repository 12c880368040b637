from __future__ import annotations

import logging
from datetime import datetime, timezone

from app.core.config import Settings
from app.services.errors import (
    JobAccessDeniedError,
    JobAlreadyTerminalError,
    JobNotFoundError,
    StoreConflictError,
    StoreUnavailableError,
)
from app.services.models import JobRecord, is_terminal
from app.services.retry import StoreCallPolicy
from app.services.store import MAX_CAS_ATTEMPTS, JobStore

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "Job cancelled by user"
CANCELED_PROGRESS = "Job was cancelled by user request"


class CancellationHandler:
    """Cooperative cancellation: marks the job canceled; the worker is expected to stop on its own."""

    def __init__(self, store: JobStore, settings: Settings, *, policy: StoreCallPolicy | None = None) -> None:
        self.store = store
        self.settings = settings
        self.policy = policy or StoreCallPolicy.from_settings(settings)

    async def cancel(
        self,
        job_id: str,
        *,
        reason: str | None = None,
        requested_by: str | None = None,
        is_admin: bool = False,
    ) -> JobRecord:
        reason_text = (reason or "").strip() or DEFAULT_CANCEL_REASON
        job = await self._load(job_id)
        if requested_by is not None and not is_admin and job.user_id != requested_by:
            raise JobAccessDeniedError("you can only cancel your own jobs")

        for _ in range(MAX_CAS_ATTEMPTS):
            if is_terminal(job.status):
                raise JobAlreadyTerminalError(job.status)

            now = datetime.now(timezone.utc)
            try:
                updated = await self.policy(
                    self.store.update_job,
                    job.id,
                    expected_version=job.version,
                    changes={
                        "status": "canceled",
                        "cancel_requested": True,
                        "cancel_reason": reason_text,
                        "error": reason_text,
                        "progress": CANCELED_PROGRESS,
                        "completed_at": now,
                        "updated_at": now,
                    },
                )
            except StoreConflictError:
                job = await self._load(job_id)
                continue

            logger.info("job canceled job_id=%s previous_status=%s reason=%s", job.id, job.status, reason_text)
            return updated

        raise StoreUnavailableError(f"job {job_id} is being updated concurrently; retry later")

    async def _load(self, job_id: str) -> JobRecord:
        job = await self.policy(self.store.get_job, job_id)
        if job is None:
            raise JobNotFoundError("job not found")
        return job
