from __future__ import annotations

from app.core.config import Settings
from app.services.errors import JobAccessDeniedError, JobNotFoundError
from app.services.models import JobDocument, JobRecord, JobStatusView
from app.services.retry import StoreCallPolicy
from app.services.store import JobStore


class StatusQueryService:
    """Read-only projections of job state. No caching: every read hits the store."""

    def __init__(self, store: JobStore, settings: Settings, *, policy: StoreCallPolicy | None = None) -> None:
        self.store = store
        self.settings = settings
        self.policy = policy or StoreCallPolicy.from_settings(settings)

    async def get_status(self, job_id: str) -> JobStatusView:
        job = await self._load(job_id)
        return JobStatusView(
            id=job.id,
            status=job.status,
            cancel_requested=job.cancel_requested,
            current_step=job.current_step,
            total_steps=job.total_steps,
            progress=job.progress,
        )

    async def list_user_jobs(self, user_id: str, *, limit: int = 50) -> list[JobRecord]:
        return await self.policy(self.store.list_jobs_for_user, user_id, limit=limit)

    async def get_job(self, job_id: str, *, requested_by: str, is_admin: bool = False) -> JobRecord:
        job = await self._load(job_id)
        if not is_admin and job.user_id != requested_by:
            raise JobAccessDeniedError("you can only read your own jobs")
        return job

    @staticmethod
    def ordered_documents(job: JobRecord) -> list[JobDocument]:
        return sorted(job.documents or [], key=_document_order)

    async def get_latest_documents(
        self, repository_id: str, *, requested_by: str, is_admin: bool = False
    ) -> tuple[JobRecord | None, list[JobDocument]]:
        repository = await self.policy(self.store.get_source_repository, repository_id)
        if repository is None:
            raise JobNotFoundError("repository not found")
        if not is_admin and repository.user_id != requested_by:
            raise JobAccessDeniedError("you can only read documents of your own repositories")

        job = await self.policy(self.store.get_latest_completed_job, repository_id)
        if job is None:
            return None, []
        return job, self.ordered_documents(job)

    async def _load(self, job_id: str) -> JobRecord:
        job = await self.policy(self.store.get_job, job_id)
        if job is None:
            raise JobNotFoundError("job not found")
        return job


def _document_order(document: JobDocument) -> tuple[int, str]:
    return document.chapter_index, document.slug
