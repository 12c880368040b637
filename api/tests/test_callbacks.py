from __future__ import annotations

import asyncio
from typing import Any

import pytest

from app.core.config import Settings
from app.services.admission import AdmissionController
from app.services.callbacks import CallbackEvent, CallbackGateway, infer_target_status
from app.services.cancellation import CancellationHandler
from app.services.documents import ReportedFile
from app.services.errors import (
    CallbackAuthError,
    DocumentPersistenceError,
    JobNotFoundError,
    JobStateConflictError,
    JobValidationError,
    StoreConflictError,
    StoreUnavailableError,
)
from app.services.models import AdmissionResult, SourceRepositoryRecord
from app.services.retry import StoreCallPolicy
from app.services.store import InMemoryJobStore


@pytest.mark.parametrize(
    ("event_type", "status", "progress", "expected"),
    [
        ("progress", None, "Cloning repository acme/widgets", "cloning"),
        ("progress", None, "Running AI analysis", "analyzing"),
        ("progress", None, "Starting analysis of sources", "analyzing"),
        ("progress", None, "Gathering results", "gathering"),
        ("progress", None, "Writing chapter 3", "running"),
        ("progress", None, None, "running"),
        # "Cloning" wins over "AI" when both appear
        ("progress", None, "Cloning before AI pass", "cloning"),
        ("progress", "claimed", "Cloning repository", "claimed"),
        ("complete", None, None, "completed"),
        ("error", None, "Cloning repository", "failed"),
        ("error", "canceled", None, "canceled"),
    ],
)
def test_infer_target_status(event_type: str, status: str | None, progress: str | None, expected: str) -> None:
    assert infer_target_status(event_type, status, progress) == expected


def _admit(store: InMemoryJobStore, settings: Settings, policy: StoreCallPolicy, seed: Any) -> AdmissionResult:
    controller = AdmissionController(store, settings, policy=policy)
    return asyncio.run(controller.admit(repository_id=seed.repository_id, user_id=seed.owner_id))


def _complete_event(job_id: str) -> CallbackEvent:
    return CallbackEvent(
        job_id=job_id,
        type="complete",
        files=[ReportedFile(path="ch1.md", content="# One"), ReportedFile(path="tutorial-2.md", content="# Two")],
    )


def test_progress_callback_updates_status_and_counters(store, settings, policy, seed) -> None:
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)

    outcome = asyncio.run(
        gateway.handle(
            CallbackEvent(job_id=admitted.job_id, type="progress", progress="Cloning repository", step=1, total_steps=6),
            admitted.callback_token,
        )
    )

    assert outcome.applied
    assert outcome.event_type == "progress"
    job = asyncio.run(store.get_job(admitted.job_id))
    assert job.status == "cloning"
    assert job.progress == "Cloning repository"
    assert job.current_step == 1
    assert job.total_steps == 6


def test_step_counters_never_decrease(store, settings, policy, seed) -> None:
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)
    token = admitted.callback_token

    asyncio.run(gateway.handle(CallbackEvent(job_id=admitted.job_id, type="progress", step=4, total_steps=8), token))
    asyncio.run(gateway.handle(CallbackEvent(job_id=admitted.job_id, type="progress", step=2, total_steps=6), token))

    job = asyncio.run(store.get_job(admitted.job_id))
    assert job.current_step == 4
    assert job.total_steps == 8


@pytest.mark.parametrize("token", ["wrong-token", None, ""])
def test_bad_token_is_rejected_without_mutation(store, settings, policy, seed, token) -> None:
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)
    before = asyncio.run(store.get_job(admitted.job_id))

    with pytest.raises(CallbackAuthError):
        asyncio.run(gateway.handle(_complete_event(admitted.job_id), token))

    after = asyncio.run(store.get_job(admitted.job_id))
    assert after.status == "pending"
    assert after.version == before.version


def test_unknown_job_is_not_found(store, settings, policy) -> None:
    gateway = CallbackGateway(store, settings, policy=policy)
    with pytest.raises(JobNotFoundError):
        asyncio.run(gateway.handle(CallbackEvent(job_id="missing", type="progress"), "token"))


@pytest.mark.parametrize(
    "event",
    [
        CallbackEvent(job_id="", type="progress"),
        CallbackEvent(job_id="job-1", type="restart"),  # type: ignore[arg-type]
        CallbackEvent(job_id="job-1", type="progress", status="dead"),
        CallbackEvent(job_id="job-1", type="progress", step=-1),
    ],
)
def test_malformed_events_are_rejected(store, settings, policy, event) -> None:
    gateway = CallbackGateway(store, settings, policy=policy)
    with pytest.raises(JobValidationError):
        asyncio.run(gateway.handle(event, "token"))


def test_complete_attaches_documents_and_replay_is_noop(store, settings, policy, seed) -> None:
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)

    first = asyncio.run(gateway.handle(_complete_event(admitted.job_id), admitted.callback_token))
    assert first.applied
    completed = asyncio.run(store.get_job(admitted.job_id))
    assert completed.status == "completed"
    assert completed.completed_at is not None
    assert completed.summary.chapters_count == 1
    assert completed.summary.tutorials_count == 1
    assert len(completed.documents) == 2

    replay = asyncio.run(gateway.handle(_complete_event(admitted.job_id), admitted.callback_token))
    assert not replay.applied
    after = asyncio.run(store.get_job(admitted.job_id))
    assert after.status == "completed"
    assert after.version == completed.version
    assert after.documents == completed.documents


def test_late_events_on_terminal_job_are_conflicts(store, settings, policy, seed) -> None:
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)
    asyncio.run(gateway.handle(_complete_event(admitted.job_id), admitted.callback_token))

    with pytest.raises(JobStateConflictError):
        asyncio.run(
            gateway.handle(
                CallbackEvent(job_id=admitted.job_id, type="progress", progress="Cloning repository"),
                admitted.callback_token,
            )
        )
    with pytest.raises(JobStateConflictError):
        asyncio.run(
            gateway.handle(CallbackEvent(job_id=admitted.job_id, type="error", error="boom"), admitted.callback_token)
        )

    assert asyncio.run(store.get_job(admitted.job_id)).status == "completed"


def test_cancellation_is_sticky(store, settings, policy, seed) -> None:
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)
    asyncio.run(CancellationHandler(store, settings, policy=policy).cancel(admitted.job_id))

    for event in (
        CallbackEvent(job_id=admitted.job_id, type="progress", progress="Running AI analysis"),
        _complete_event(admitted.job_id),
        CallbackEvent(job_id=admitted.job_id, type="progress", status="canceled"),
    ):
        with pytest.raises(JobStateConflictError):
            asyncio.run(gateway.handle(event, admitted.callback_token))

    job = asyncio.run(store.get_job(admitted.job_id))
    assert job.status == "canceled"
    assert job.documents is None


def test_worker_reported_cancel_sets_flag(store, settings, policy, seed) -> None:
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)

    asyncio.run(
        gateway.handle(CallbackEvent(job_id=admitted.job_id, type="error", status="canceled"), admitted.callback_token)
    )

    job = asyncio.run(store.get_job(admitted.job_id))
    assert job.status == "canceled"
    assert job.cancel_requested


def test_files_ignored_when_explicit_status_is_not_completed(store, settings, policy, seed) -> None:
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)
    event = _complete_event(admitted.job_id)
    event.status = "running"

    asyncio.run(gateway.handle(event, admitted.callback_token))

    job = asyncio.run(store.get_job(admitted.job_id))
    assert job.status == "running"
    assert job.documents is None


def test_oversized_documents_settle_job_as_failed(store, seed, policy) -> None:
    settings = Settings(store_backend="memory", max_documents_bytes=4, otel_enabled=False)
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)

    with pytest.raises(DocumentPersistenceError):
        asyncio.run(gateway.handle(_complete_event(admitted.job_id), admitted.callback_token))

    job = asyncio.run(store.get_job(admitted.job_id))
    assert job.status == "failed"
    assert "byte limit" in job.error
    assert job.documents is None


class DocumentWriteFailingStore(InMemoryJobStore):
    async def update_job(self, job_id: str, *, expected_version: int, changes: dict[str, Any]):
        if "documents" in changes:
            raise StoreUnavailableError("disk full")
        return await super().update_job(job_id, expected_version=expected_version, changes=changes)


def test_document_write_failure_settles_job_as_failed(seed, settings, policy) -> None:
    store = DocumentWriteFailingStore()
    _seed_store(store, seed)
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)

    with pytest.raises(DocumentPersistenceError):
        asyncio.run(gateway.handle(_complete_event(admitted.job_id), admitted.callback_token))

    job = asyncio.run(store.get_job(admitted.job_id))
    assert job.status == "failed"
    assert "document persistence failed" in job.error
    assert job.documents is None


class RacingStore(InMemoryJobStore):
    """Loses the first compare-and-swap to a concurrent progress write."""

    def __init__(self) -> None:
        super().__init__()
        self.raced = False

    async def update_job(self, job_id: str, *, expected_version: int, changes: dict[str, Any]):
        if not self.raced:
            self.raced = True
            await super().update_job(
                job_id,
                expected_version=expected_version,
                changes={"status": "gathering", "current_step": 5},
            )
            raise StoreConflictError("lost race")
        return await super().update_job(job_id, expected_version=expected_version, changes=changes)


def test_conflicting_write_is_retried_against_fresh_state(seed, settings, policy) -> None:
    store = RacingStore()
    _seed_store(store, seed)
    admitted = _admit(store, settings, policy, seed)
    gateway = CallbackGateway(store, settings, policy=policy)

    outcome = asyncio.run(
        gateway.handle(
            CallbackEvent(job_id=admitted.job_id, type="progress", progress="Running AI analysis", step=3),
            admitted.callback_token,
        )
    )

    assert outcome.applied
    job = asyncio.run(store.get_job(admitted.job_id))
    assert job.status == "analyzing"
    assert job.current_step == 5


def _seed_store(store: InMemoryJobStore, seed: Any) -> None:
    store.add_source_repository(
        SourceRepositoryRecord(id=seed.repository_id, full_name=seed.full_name, user_id=seed.owner_id)
    )
    store.add_user(seed.owner_id)
