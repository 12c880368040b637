from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from uuid import uuid4

from app.core.config import Settings
from app.services.cancellation import CancellationHandler
from app.services.errors import (
    AdmissionConflictError,
    JobAlreadyTerminalError,
    JobNotFoundError,
    JobValidationError,
    StoreConflictError,
)
from app.services.models import AdmissionResult, JobRecord, SourceRepositoryRecord
from app.services.retry import StoreCallPolicy
from app.services.store import JobStore

logger = logging.getLogger(__name__)

ADMISSION_ATTEMPTS = 2
REGENERATION_CANCEL_REASON = "Job cancelled for regeneration"


class AdmissionController:
    """Creates jobs while keeping at most one active job per repository."""

    def __init__(self, store: JobStore, settings: Settings, *, policy: StoreCallPolicy | None = None) -> None:
        self.store = store
        self.settings = settings
        self.policy = policy or StoreCallPolicy.from_settings(settings)

    async def admit(self, *, repository_id: str, user_id: str, prompt: str | None = None) -> AdmissionResult:
        repository_id = (repository_id or "").strip()
        user_id = (user_id or "").strip()
        if not repository_id or not user_id:
            raise JobValidationError("repositoryId and userId are required")

        await self.resolve_repository(repository_id)
        if not await self.policy(self.store.user_exists, user_id):
            raise JobNotFoundError("user not found")

        prompt_text = (prompt or "").strip() or self.settings.default_prompt
        for attempt in range(1, ADMISSION_ATTEMPTS + 1):
            candidate = self._new_job(repository_id=repository_id, user_id=user_id, prompt=prompt_text)
            try:
                job, created = await self.policy(self.store.create_job_if_idle, candidate)
                # A retried insert can return the row its timed-out first attempt committed.
                created = created or job.id == candidate.id
            except StoreConflictError as exc:
                if attempt == ADMISSION_ATTEMPTS:
                    raise AdmissionConflictError(f"admission for repository {repository_id} kept conflicting") from exc
                logger.warning("admission conflict repository_id=%s attempt=%s: %s", repository_id, attempt, exc)
                continue

            if created:
                logger.info("job admitted job_id=%s repository_id=%s user_id=%s", job.id, repository_id, user_id)
            else:
                logger.info("active job reused job_id=%s repository_id=%s status=%s", job.id, repository_id, job.status)
            return AdmissionResult(
                job_id=job.id,
                callback_token=job.callback_token,
                status=job.status,
                created=created,
                prompt=job.prompt,
            )

        raise AssertionError("unreachable")

    async def regenerate(self, *, repository_id: str, user_id: str, prompt: str | None = None) -> AdmissionResult:
        """Cancel the repository's active job, if any, and admit a fresh one."""

        cancellation = CancellationHandler(self.store, self.settings, policy=self.policy)
        for active in await self.policy(self.store.list_active_jobs, repository_ids=[repository_id]):
            try:
                await cancellation.cancel(active.id, reason=REGENERATION_CANCEL_REASON)
            except JobAlreadyTerminalError:
                continue
        return await self.admit(repository_id=repository_id, user_id=user_id, prompt=prompt)

    async def resolve_repository(self, repository_id: str) -> SourceRepositoryRecord:
        repository = await self.policy(self.store.get_source_repository, repository_id)
        if repository is None:
            raise JobNotFoundError("repository not found")
        return repository

    def _new_job(self, *, repository_id: str, user_id: str, prompt: str) -> JobRecord:
        now = datetime.now(timezone.utc)
        return JobRecord(
            id=str(uuid4()),
            repository_id=repository_id,
            user_id=user_id,
            prompt=prompt,
            status="pending",
            callback_token=secrets.token_urlsafe(32),
            created_at=now,
            updated_at=now,
            progress="Initializing...",
            current_step=0,
            total_steps=max(0, self.settings.default_total_steps),
        )
