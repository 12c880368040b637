from __future__ import annotations

import asyncio
from typing import Any

import pytest

from app.services.admission import REGENERATION_CANCEL_REASON, AdmissionController
from app.services.callbacks import CallbackEvent, CallbackGateway
from app.services.errors import (
    AdmissionConflictError,
    JobNotFoundError,
    JobValidationError,
    StoreConflictError,
    StoreUnavailableError,
)
from app.services.models import JobRecord, SourceRepositoryRecord
from app.services.store import InMemoryJobStore


def test_admit_creates_pending_job(store, settings, policy, seed) -> None:
    controller = AdmissionController(store, settings, policy=policy)

    result = asyncio.run(controller.admit(repository_id=seed.repository_id, user_id=seed.owner_id, prompt="  "))

    assert result.created
    assert result.status == "pending"
    assert len(result.callback_token) >= 32
    job = asyncio.run(store.get_job(result.job_id))
    assert job.status == "pending"
    assert job.prompt == settings.default_prompt
    assert job.progress == "Initializing..."
    assert job.current_step == 0
    assert job.total_steps == settings.default_total_steps
    assert job.callback_token == result.callback_token


def test_concurrent_admissions_resolve_to_one_job(store, settings, policy, seed) -> None:
    controller = AdmissionController(store, settings, policy=policy)

    async def admit_many() -> list[Any]:
        return await asyncio.gather(
            *(controller.admit(repository_id=seed.repository_id, user_id=seed.owner_id) for _ in range(10))
        )

    results = asyncio.run(admit_many())

    assert len({result.job_id for result in results}) == 1
    assert sum(1 for result in results if result.created) == 1
    active = asyncio.run(store.list_active_jobs(repository_ids=[seed.repository_id]))
    assert [job.id for job in active] == [results[0].job_id]


def test_other_repositories_are_admitted_independently(store, settings, policy, seed) -> None:
    controller = AdmissionController(store, settings, policy=policy)

    first = asyncio.run(controller.admit(repository_id=seed.repository_id, user_id=seed.owner_id))
    second = asyncio.run(controller.admit(repository_id=seed.other_repository_id, user_id=seed.owner_id))

    assert first.job_id != second.job_id
    assert first.created and second.created


def test_terminal_job_releases_the_repository(store, settings, policy, seed) -> None:
    controller = AdmissionController(store, settings, policy=policy)
    first = asyncio.run(controller.admit(repository_id=seed.repository_id, user_id=seed.owner_id))
    gateway = CallbackGateway(store, settings, policy=policy)
    asyncio.run(gateway.handle(CallbackEvent(job_id=first.job_id, type="error", error="boom"), first.callback_token))

    second = asyncio.run(controller.admit(repository_id=seed.repository_id, user_id=seed.owner_id))

    assert second.created
    assert second.job_id != first.job_id
    assert second.callback_token != first.callback_token


@pytest.mark.parametrize(
    ("repository_id", "user_id", "error"),
    [
        ("", "user", JobValidationError),
        ("repo", "  ", JobValidationError),
        ("missing-repo", None, JobNotFoundError),
        (None, "missing-user", JobNotFoundError),
    ],
)
def test_admission_rejections(store, settings, policy, seed, repository_id, user_id, error) -> None:
    controller = AdmissionController(store, settings, policy=policy)

    with pytest.raises(error):
        asyncio.run(
            controller.admit(
                repository_id=repository_id if repository_id is not None else seed.repository_id,
                user_id=user_id if user_id is not None else seed.owner_id,
            )
        )

    assert asyncio.run(store.list_active_jobs()) == []


class ConflictingStore(InMemoryJobStore):
    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.attempts = 0

    async def create_job_if_idle(self, job: JobRecord) -> tuple[JobRecord, bool]:
        self.attempts += 1
        if self.attempts <= self.conflicts:
            raise StoreConflictError("active job changed during admission")
        return await super().create_job_if_idle(job)


def _conflicting_store(seed: Any, conflicts: int) -> ConflictingStore:
    store = ConflictingStore(conflicts)
    store.add_source_repository(SourceRepositoryRecord(id=seed.repository_id, full_name=seed.full_name))
    store.add_user(seed.owner_id)
    return store


def test_transient_admission_conflict_is_retried_once(settings, policy, seed) -> None:
    store = _conflicting_store(seed, conflicts=1)
    controller = AdmissionController(store, settings, policy=policy)

    result = asyncio.run(controller.admit(repository_id=seed.repository_id, user_id=seed.owner_id))

    assert result.created
    assert store.attempts == 2


def test_repeated_admission_conflict_surfaces(settings, policy, seed) -> None:
    store = _conflicting_store(seed, conflicts=5)
    controller = AdmissionController(store, settings, policy=policy)

    with pytest.raises(AdmissionConflictError):
        asyncio.run(controller.admit(repository_id=seed.repository_id, user_id=seed.owner_id))

    assert store.attempts == 2


class LostAckStore(InMemoryJobStore):
    """Commits the first insert, then reports the call as failed."""

    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    async def create_job_if_idle(self, job: JobRecord) -> tuple[JobRecord, bool]:
        self.attempts += 1
        result = await super().create_job_if_idle(job)
        if self.attempts == 1:
            raise StoreUnavailableError("connection reset after commit")
        return result


def test_retried_insert_that_already_committed_counts_as_created(settings, policy, seed) -> None:
    store = LostAckStore()
    store.add_source_repository(SourceRepositoryRecord(id=seed.repository_id, full_name=seed.full_name))
    store.add_user(seed.owner_id)
    controller = AdmissionController(store, settings, policy=policy)

    result = asyncio.run(controller.admit(repository_id=seed.repository_id, user_id=seed.owner_id))

    assert store.attempts == 2
    assert result.created
    active = asyncio.run(store.list_active_jobs(repository_ids=[seed.repository_id]))
    assert [job.id for job in active] == [result.job_id]


def test_regenerate_cancels_active_job_and_admits_new_one(store, settings, policy, seed) -> None:
    controller = AdmissionController(store, settings, policy=policy)
    first = asyncio.run(controller.admit(repository_id=seed.repository_id, user_id=seed.owner_id))

    second = asyncio.run(controller.regenerate(repository_id=seed.repository_id, user_id=seed.owner_id))

    assert second.created
    assert second.job_id != first.job_id
    previous = asyncio.run(store.get_job(first.job_id))
    assert previous.status == "canceled"
    assert previous.cancel_reason == REGENERATION_CANCEL_REASON
    active = asyncio.run(store.list_active_jobs(repository_ids=[seed.repository_id]))
    assert [job.id for job in active] == [second.job_id]


def test_regenerate_without_active_job_just_admits(store, settings, policy, seed) -> None:
    controller = AdmissionController(store, settings, policy=policy)

    result = asyncio.run(controller.regenerate(repository_id=seed.repository_id, user_id=seed.owner_id))

    assert result.created
