from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from app.core.config import Settings
from app.services.errors import JobNotFoundError, JobValidationError, StoreConflictError
from app.services.models import JobRecord, SweepResult, is_terminal
from app.services.retry import StoreCallPolicy
from app.services.store import MAX_CAS_ATTEMPTS, JobStore

logger = logging.getLogger(__name__)

MANUAL_CLEAR_ERROR = "Job cleared - was stuck in an active status (manual clear)"
MANUAL_CLEAR_PROGRESS = "Job was manually cleared and reset"
STALE_ERROR = "Job reclaimed - no worker update for {seconds}s"
STALE_PROGRESS = "Job was stuck and has been cleared"


class StuckJobReclaimer:
    """Force-terminates orphaned jobs so their repository can be admitted again."""

    def __init__(self, store: JobStore, settings: Settings, *, policy: StoreCallPolicy | None = None) -> None:
        self.store = store
        self.settings = settings
        self.policy = policy or StoreCallPolicy.from_settings(settings)

    async def clear_repository(self, repository_full_name: str) -> SweepResult:
        """Reclaim every active job of the repositories named `repository_full_name`, regardless of age."""

        full_name = (repository_full_name or "").strip()
        if not full_name:
            raise JobValidationError("repositoryFullName is required")

        repositories = await self.policy(self.store.find_source_repositories, full_name)
        result = SweepResult(cleared_jobs_count=0, repositories_processed=len(repositories))
        if not repositories:
            logger.info("stuck-job sweep found no repository named %s", full_name)
            return result

        jobs = await self.policy(self.store.list_active_jobs, repository_ids=[repo.id for repo in repositories])
        for job in jobs:
            if await self._reclaim(job, error=MANUAL_CLEAR_ERROR, progress=MANUAL_CLEAR_PROGRESS):
                result.cleared_job_ids.append(job.id)
        result.cleared_jobs_count = len(result.cleared_job_ids)

        logger.info(
            "cleared %s stuck jobs from %s repositories named %s",
            result.cleared_jobs_count,
            result.repositories_processed,
            full_name,
        )
        return result

    async def reclaim_stale(self, *, stale_after_seconds: int | None = None, now: datetime | None = None) -> SweepResult:
        """Reclaim active jobs without any update for `stale_after_seconds`."""

        seconds = stale_after_seconds if stale_after_seconds is not None else self.settings.stuck_job_stale_after_seconds
        if seconds < 0:
            raise JobValidationError("stale_after_seconds must be non-negative")
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=seconds)

        jobs = await self.policy(self.store.list_active_jobs, updated_before=cutoff)
        result = SweepResult(cleared_jobs_count=0, repositories_processed=0)
        repository_ids: set[str] = set()
        for job in jobs:
            reclaimed = await self._reclaim(
                job,
                error=STALE_ERROR.format(seconds=seconds),
                progress=STALE_PROGRESS,
                updated_before=cutoff,
            )
            if reclaimed:
                result.cleared_job_ids.append(job.id)
                repository_ids.add(job.repository_id)
        result.cleared_jobs_count = len(result.cleared_job_ids)
        result.repositories_processed = len(repository_ids)

        if result.cleared_jobs_count:
            logger.info("reclaimed %s stale jobs older than %ss", result.cleared_jobs_count, seconds)
        return result

    async def _reclaim(
        self,
        job: JobRecord,
        *,
        error: str,
        progress: str,
        updated_before: datetime | None = None,
    ) -> bool:
        for _ in range(MAX_CAS_ATTEMPTS):
            if is_terminal(job.status):
                return False
            # A worker update that landed after the scan means the job is alive.
            if updated_before is not None and job.updated_at >= updated_before:
                return False

            now = datetime.now(timezone.utc)
            try:
                await self.policy(
                    self.store.update_job,
                    job.id,
                    expected_version=job.version,
                    changes={
                        "status": "dead",
                        "error": error,
                        "progress": progress,
                        "completed_at": now,
                        "updated_at": now,
                    },
                )
            except StoreConflictError:
                refreshed = await self.policy(self.store.get_job, job.id)
                if refreshed is None:
                    return False
                job = refreshed
                continue
            except JobNotFoundError:
                return False

            logger.info("job reclaimed job_id=%s previous_status=%s", job.id, job.status)
            return True

        logger.warning("gave up reclaiming job_id=%s after concurrent updates", job.id)
        return False
