from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx

from app.core.config import Settings
from app.services.errors import StoreConflictError, StoreUnavailableError
from app.services.models import AdmissionResult, SourceRepositoryRecord
from app.services.retry import StoreCallPolicy
from app.services.store import JobStore

logger = logging.getLogger(__name__)


class WorkerDispatcher:
    """Hands an admitted job to the external documentation worker."""

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        *,
        policy: StoreCallPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.policy = policy or StoreCallPolicy.from_settings(settings)
        self.transport = transport

    @property
    def callback_url(self) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/webhooks/job-callback"

    async def dispatch(self, admission: AdmissionResult, repository: SourceRepositoryRecord) -> bool:
        if not self.settings.worker_url:
            logger.info("worker url not configured; job_id=%s created but not dispatched", admission.job_id)
            return False

        headers = {"Content-Type": "application/json"}
        if self.settings.worker_token:
            headers["Authorization"] = f"Bearer {self.settings.worker_token}"
        payload = {
            "jobId": admission.job_id,
            "repositoryUrl": f"https://github.com/{repository.full_name}",
            "branch": repository.default_branch,
            "prompt": admission.prompt,
            "callbackUrl": self.callback_url,
            "callbackToken": admission.callback_token,
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.worker_timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.post(
                    f"{self.settings.worker_url.rstrip('/')}/analyze",
                    json=payload,
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            await self._mark_failed(
                admission.job_id,
                f"Worker trigger failed: {exc.response.status_code} - {exc.response.text[:200]}",
            )
            return False
        except httpx.HTTPError as exc:
            await self._mark_failed(admission.job_id, f"Worker trigger failed: {exc}")
            return False

        logger.info("job dispatched job_id=%s repository=%s", admission.job_id, repository.full_name)
        return True

    async def _mark_failed(self, job_id: str, message: str) -> None:
        logger.error("dispatch failed job_id=%s: %s", job_id, message)
        try:
            job = await self.policy(self.store.get_job, job_id)
            # Only a job the worker never touched is failed here.
            if job is None or job.status != "pending":
                return
            now = datetime.now(timezone.utc)
            await self.policy(
                self.store.update_job,
                job.id,
                expected_version=job.version,
                changes={"status": "failed", "error": message, "completed_at": now, "updated_at": now},
            )
        except (StoreConflictError, StoreUnavailableError) as exc:
            logger.warning("could not record dispatch failure for job_id=%s: %s", job_id, exc)
