"""Worker callback ingestion and the job status state machine."""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from app.core.config import Settings
from app.services.documents import ReportedFile, build_documents
from app.services.errors import (
    CallbackAuthError,
    DocumentPersistenceError,
    JobNotFoundError,
    JobStateConflictError,
    JobValidationError,
    StoreConflictError,
    StoreUnavailableError,
)
from app.services.models import (
    CALLBACK_STATUSES,
    DocumentSummary,
    JobDocument,
    JobRecord,
    JobStatus,
    is_terminal,
)
from app.services.retry import StoreCallPolicy
from app.services.store import MAX_CAS_ATTEMPTS, JobStore

logger = logging.getLogger(__name__)

CallbackType = Literal["progress", "complete", "error"]
CALLBACK_TYPES: frozenset[str] = frozenset({"progress", "complete", "error"})


@dataclass(slots=True)
class CallbackEvent:
    job_id: str
    type: CallbackType
    status: str | None = None
    progress: str | None = None
    step: int | None = None
    total_steps: int | None = None
    error: str | None = None
    files: list[ReportedFile] | None = None


@dataclass(slots=True)
class CallbackOutcome:
    job: JobRecord
    event_type: CallbackType
    applied: bool


def infer_target_status(event_type: str, status: str | None, progress: str | None) -> JobStatus:
    """Resolve the status a callback moves the job to.

    An explicit status always wins. Otherwise terminal event types map directly and
    progress events fall back to keyword matching on the progress text.
    """

    if status:
        return status  # type: ignore[return-value]
    if event_type == "complete":
        return "completed"
    if event_type == "error":
        return "failed"

    text = progress or ""
    if "Cloning" in text:
        return "cloning"
    if "analysis" in text or "AI" in text:
        return "analyzing"
    if "Gathering" in text:
        return "gathering"
    return "running"


def tokens_match(supplied: str | None, expected: str) -> bool:
    if not supplied:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


class CallbackGateway:
    def __init__(self, store: JobStore, settings: Settings, *, policy: StoreCallPolicy | None = None) -> None:
        self.store = store
        self.settings = settings
        self.policy = policy or StoreCallPolicy.from_settings(settings)

    async def handle(self, event: CallbackEvent, token: str | None) -> CallbackOutcome:
        self._validate(event)

        job = await self._load(event.job_id)
        if not tokens_match(token, job.callback_token):
            logger.warning("callback rejected job_id=%s reason=invalid_token", event.job_id)
            raise CallbackAuthError("invalid callback token")

        target = infer_target_status(event.type, event.status, event.progress)
        now = datetime.now(timezone.utc)

        documents: list[JobDocument] | None = None
        summary: DocumentSummary | None = None
        persistence_error: DocumentPersistenceError | None = None
        if event.type == "complete" and event.files is not None:
            if target != "completed":
                logger.warning(
                    "ignoring %s files for job_id=%s: explicit status %s is not completed",
                    len(event.files),
                    job.id,
                    target,
                )
            else:
                try:
                    documents, summary = build_documents(
                        event.files,
                        repository_id=job.repository_id,
                        generated_at=now,
                        max_bytes=self.settings.max_documents_bytes,
                    )
                except DocumentPersistenceError as exc:
                    persistence_error = exc

        for _ in range(MAX_CAS_ATTEMPTS):
            replay = self._check_transition(job, target)
            if replay:
                logger.info("callback replay ignored job_id=%s type=%s status=%s", job.id, event.type, job.status)
                return CallbackOutcome(job=job, event_type=event.type, applied=False)

            if persistence_error is not None:
                await self._settle_failed(job, persistence_error)
                raise persistence_error

            changes = self._merge(job, event, target, documents, summary, now)
            try:
                updated = await self.policy(
                    self.store.update_job,
                    job.id,
                    expected_version=job.version,
                    changes=changes,
                )
            except StoreConflictError:
                job = await self._load(event.job_id)
                continue
            except StoreUnavailableError as exc:
                if documents is None:
                    raise
                logger.exception("document persistence failed for job_id=%s", job.id)
                failure = DocumentPersistenceError(f"document persistence failed: {exc}")
                await self._settle_failed(job, failure)
                raise failure from exc

            logger.info(
                "callback applied job_id=%s type=%s status=%s->%s step=%s/%s documents=%s",
                job.id,
                event.type,
                job.status,
                updated.status,
                updated.current_step,
                updated.total_steps,
                len(documents) if documents is not None else 0,
            )
            return CallbackOutcome(job=updated, event_type=event.type, applied=True)

        raise StoreUnavailableError(f"job {event.job_id} is being updated concurrently; retry later")

    @staticmethod
    def _validate(event: CallbackEvent) -> None:
        if not event.job_id:
            raise JobValidationError("missing required field: jobId")
        if event.type not in CALLBACK_TYPES:
            raise JobValidationError(f"unsupported callback type: {event.type}")
        if event.status is not None and event.status not in CALLBACK_STATUSES:
            raise JobValidationError(f"unsupported status: {event.status}")
        for name, value in (("step", event.step), ("totalSteps", event.total_steps)):
            if value is not None and value < 0:
                raise JobValidationError(f"{name} must be non-negative")

    @staticmethod
    def _check_transition(job: JobRecord, target: str) -> bool:
        """Return True for an idempotent replay; raise when the job no longer accepts callbacks."""

        if job.status == "canceled":
            logger.warning("callback rejected job_id=%s reason=canceled", job.id)
            raise JobStateConflictError("job was canceled")
        if is_terminal(job.status):
            if job.status == target:
                return True
            logger.warning("callback rejected job_id=%s status=%s target=%s", job.id, job.status, target)
            raise JobStateConflictError(f"job already {job.status}")
        return False

    @staticmethod
    def _merge(
        job: JobRecord,
        event: CallbackEvent,
        target: str,
        documents: list[JobDocument] | None,
        summary: DocumentSummary | None,
        now: datetime,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {"status": target, "updated_at": now}
        if event.progress:
            changes["progress"] = event.progress
        if event.step is not None:
            changes["current_step"] = max(job.current_step, event.step)
        if event.total_steps is not None:
            changes["total_steps"] = max(job.total_steps, event.total_steps)
        if event.error:
            changes["error"] = event.error
        if is_terminal(target):
            changes["completed_at"] = now
        if target == "canceled":
            changes["cancel_requested"] = True
        if documents is not None:
            changes["documents"] = documents
            changes["summary"] = summary
        return changes

    async def _settle_failed(self, job: JobRecord, failure: Exception) -> None:
        """Move the job to `failed` after its completion artifacts could not be stored."""

        message = str(failure)
        for _ in range(MAX_CAS_ATTEMPTS):
            if is_terminal(job.status):
                return
            now = datetime.now(timezone.utc)
            try:
                await self.policy(
                    self.store.update_job,
                    job.id,
                    expected_version=job.version,
                    changes={"status": "failed", "error": message, "completed_at": now, "updated_at": now},
                )
            except StoreConflictError:
                job = await self._load(job.id)
                continue
            except StoreUnavailableError:
                logger.exception("could not settle job_id=%s as failed", job.id)
                return
            logger.info("job failed job_id=%s error=%s", job.id, message)
            return

    async def _load(self, job_id: str) -> JobRecord:
        job = await self.policy(self.store.get_job, job_id)
        if job is None:
            raise JobNotFoundError("job not found")
        return job
