from __future__ import annotations

import threading
from copy import deepcopy
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Protocol

from app.services.errors import JobNotFoundError, StoreConflictError
from app.services.models import JobRecord, SourceRepositoryRecord, is_active

# Re-read-and-retry budget for a compare-and-swap loop on one job.
MAX_CAS_ATTEMPTS = 5

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "progress",
        "current_step",
        "total_steps",
        "error",
        "cancel_requested",
        "cancel_reason",
        "completed_at",
        "documents",
        "summary",
        "updated_at",
    }
)


class JobStore(Protocol):
    """Persistent job store with per-record conditional writes.

    Every mutation goes through `update_job`, which applies `changes` only when the
    stored `version` still equals `expected_version`. Cross-record coordination
    (one active job per repository) lives in `create_job_if_idle`.
    """

    async def close(self) -> None: ...

    async def get_job(self, job_id: str) -> JobRecord | None: ...

    async def create_job_if_idle(self, job: JobRecord) -> tuple[JobRecord, bool]:
        """Insert `job` unless its repository already has an active job.

        Returns the stored job and whether it was created. When another active job
        holds the repository, that job is returned instead.
        """

    async def update_job(self, job_id: str, *, expected_version: int, changes: dict[str, Any]) -> JobRecord: ...

    async def list_active_jobs(
        self,
        *,
        repository_ids: list[str] | None = None,
        updated_before: datetime | None = None,
    ) -> list[JobRecord]: ...

    async def list_jobs_for_user(self, user_id: str, *, limit: int) -> list[JobRecord]: ...

    async def get_latest_completed_job(self, repository_id: str) -> JobRecord | None: ...

    async def get_source_repository(self, repository_id: str) -> SourceRepositoryRecord | None: ...

    async def find_source_repositories(self, full_name: str) -> list[SourceRepositoryRecord]: ...

    async def user_exists(self, user_id: str) -> bool: ...


def validate_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported job fields: {sorted(unknown)}")


class InMemoryJobStore:
    """Process-local job store for local development and tests."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._repositories: dict[str, SourceRepositoryRecord] = {}
        self._users: set[str] = set()
        # repository id -> id of the job currently holding the admission slot
        self._active_by_repository: dict[str, str] = {}
        self._lock = threading.Lock()

    def add_source_repository(self, repository: SourceRepositoryRecord) -> None:
        self._repositories[repository.id] = repository

    def add_user(self, user_id: str) -> None:
        self._users.add(user_id)

    async def close(self) -> None:
        return None

    async def get_job(self, job_id: str) -> JobRecord | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return deepcopy(job) if job is not None else None

    async def create_job_if_idle(self, job: JobRecord) -> tuple[JobRecord, bool]:
        with self._lock:
            holder_id = self._active_by_repository.get(job.repository_id)
            if holder_id is not None:
                holder = self._jobs.get(holder_id)
                if holder is not None and is_active(holder.status):
                    return deepcopy(holder), False

            self._jobs[job.id] = deepcopy(job)
            self._active_by_repository[job.repository_id] = job.id
            return deepcopy(job), True

    async def update_job(self, job_id: str, *, expected_version: int, changes: dict[str, Any]) -> JobRecord:
        validate_changes(changes)
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError("job not found")
            if current.version != expected_version:
                raise StoreConflictError(
                    f"job {job_id} version is {current.version}, expected {expected_version}",
                )

            values = dict(changes)
            values.setdefault("updated_at", datetime.now(timezone.utc))
            updated = replace(current, **deepcopy(values), version=current.version + 1)
            self._jobs[job_id] = updated
            return deepcopy(updated)

    async def list_active_jobs(
        self,
        *,
        repository_ids: list[str] | None = None,
        updated_before: datetime | None = None,
    ) -> list[JobRecord]:
        with self._lock:
            rows = [job for job in self._jobs.values() if is_active(job.status)]
        if repository_ids is not None:
            wanted = set(repository_ids)
            rows = [job for job in rows if job.repository_id in wanted]
        if updated_before is not None:
            rows = [job for job in rows if job.updated_at < updated_before]
        rows.sort(key=lambda job: job.updated_at)
        return [deepcopy(job) for job in rows]

    async def list_jobs_for_user(self, user_id: str, *, limit: int) -> list[JobRecord]:
        with self._lock:
            rows = [job for job in self._jobs.values() if job.user_id == user_id]
        rows.sort(key=lambda job: job.created_at, reverse=True)
        return [deepcopy(job) for job in rows[:limit]]

    async def get_latest_completed_job(self, repository_id: str) -> JobRecord | None:
        with self._lock:
            rows = [
                job
                for job in self._jobs.values()
                if job.repository_id == repository_id and job.status == "completed"
            ]
        if not rows:
            return None
        return deepcopy(max(rows, key=lambda job: job.created_at))

    async def get_source_repository(self, repository_id: str) -> SourceRepositoryRecord | None:
        return self._repositories.get(repository_id)

    async def find_source_repositories(self, full_name: str) -> list[SourceRepositoryRecord]:
        return [repo for repo in self._repositories.values() if repo.full_name == full_name]

    async def user_exists(self, user_id: str) -> bool:
        return user_id in self._users
