from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from app.core.config import get_settings
from app.services.errors import JobNotFoundError, StoreConflictError, StoreUnavailableError
from app.services.models import (
    ACTIVE_STATUSES,
    DocumentSummary,
    JobDocument,
    JobRecord,
    SourceRepositoryRecord,
)
from app.services.store import InMemoryJobStore, JobStore, validate_changes

JOB_COLUMNS = """
  id::text as id,
  repository_id::text as repository_id,
  user_id::text as user_id,
  prompt,
  status,
  callback_token,
  progress,
  current_step,
  total_steps,
  error,
  cancel_requested,
  cancel_reason,
  documents,
  summary,
  version,
  created_at,
  updated_at,
  completed_at
"""
COLUMN_CASTS = {
    "status": "text",
    "progress": "text",
    "current_step": "int",
    "total_steps": "int",
    "error": "text",
    "cancel_requested": "boolean",
    "cancel_reason": "text",
    "completed_at": "timestamptz",
    "documents": "jsonb",
    "summary": "jsonb",
    "updated_at": "timestamptz",
}
ACTIVE_STATUS_SQL = ", ".join(f"'{status}'" for status in sorted(ACTIVE_STATUSES))


class PostgresJobStore:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout: float,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_job(self, job_id: str) -> JobRecord | None:
        async with self._translate_errors(not_found_on_bad_id=True):
            pool = await self._get_pool()
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from doc_jobs where id = $1::uuid", job_id)
        return self._job_row_to_record(row) if row else None

    async def create_job_if_idle(self, job: JobRecord) -> tuple[JobRecord, bool]:
        async with self._translate_errors():
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                try:
                    row = await conn.fetchrow(
                        f"""
                        insert into doc_jobs (
                          id,
                          repository_id,
                          user_id,
                          prompt,
                          status,
                          callback_token,
                          progress,
                          current_step,
                          total_steps,
                          created_at,
                          updated_at
                        )
                        values ($1::uuid, $2::uuid, $3::uuid, $4, $5, $6, $7, $8, $9, $10, $11)
                        on conflict (repository_id) where status in ({ACTIVE_STATUS_SQL}) do nothing
                        returning {JOB_COLUMNS}
                        """,
                        job.id,
                        job.repository_id,
                        job.user_id,
                        job.prompt,
                        job.status,
                        job.callback_token,
                        job.progress,
                        job.current_step,
                        job.total_steps,
                        job.created_at,
                        job.updated_at,
                    )
                except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError) as exc:
                    raise JobNotFoundError("repository or user not found") from exc

                if row:
                    return self._job_row_to_record(row), True

                existing = await conn.fetchrow(
                    f"""
                    select {JOB_COLUMNS}
                    from doc_jobs
                    where repository_id = $1::uuid and status in ({ACTIVE_STATUS_SQL})
                    limit 1
                    """,
                    job.repository_id,
                )
                if not existing:
                    # The conflicting job went terminal between the insert and this read.
                    raise StoreConflictError("active job changed during admission")
                return self._job_row_to_record(existing), False

    async def update_job(self, job_id: str, *, expected_version: int, changes: dict[str, Any]) -> JobRecord:
        validate_changes(changes)
        args: list[Any] = [job_id, expected_version]
        assignments: list[str] = []
        for name, value in changes.items():
            args.append(self._encode(name, value))
            assignments.append(f"{name} = ${len(args)}::{COLUMN_CASTS[name]}")
        if "updated_at" not in changes:
            assignments.append("updated_at = now()")
        assignments.append("version = version + 1")

        async with self._translate_errors(not_found_on_bad_id=True):
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    update doc_jobs
                    set {", ".join(assignments)}
                    where id = $1::uuid and version = $2
                    returning {JOB_COLUMNS}
                    """,
                    *args,
                )
                if row:
                    return self._job_row_to_record(row)

                current_version = await conn.fetchval("select version from doc_jobs where id = $1::uuid", job_id)
        if current_version is None:
            raise JobNotFoundError("job not found")
        raise StoreConflictError(f"job {job_id} version is {current_version}, expected {expected_version}")

    async def list_active_jobs(
        self,
        *,
        repository_ids: list[str] | None = None,
        updated_before: datetime | None = None,
    ) -> list[JobRecord]:
        clauses = [f"status in ({ACTIVE_STATUS_SQL})"]
        args: list[Any] = []
        if repository_ids is not None:
            if not repository_ids:
                return []
            args.append(repository_ids)
            clauses.append(f"repository_id = any(${len(args)}::uuid[])")
        if updated_before is not None:
            args.append(updated_before)
            clauses.append(f"updated_at < ${len(args)}")

        async with self._translate_errors():
            pool = await self._get_pool()
            rows = await pool.fetch(
                f"""
                select {JOB_COLUMNS}
                from doc_jobs
                where {" and ".join(clauses)}
                order by updated_at asc
                """,
                *args,
            )
        return [self._job_row_to_record(row) for row in rows]

    async def list_jobs_for_user(self, user_id: str, *, limit: int) -> list[JobRecord]:
        async with self._translate_errors(not_found_on_bad_id=True):
            pool = await self._get_pool()
            rows = await pool.fetch(
                f"""
                select {JOB_COLUMNS}
                from doc_jobs
                where user_id = $1::uuid
                order by created_at desc
                limit $2
                """,
                user_id,
                max(1, min(limit, 200)),
            )
        return [self._job_row_to_record(row) for row in rows]

    async def get_latest_completed_job(self, repository_id: str) -> JobRecord | None:
        async with self._translate_errors(not_found_on_bad_id=True):
            pool = await self._get_pool()
            row = await pool.fetchrow(
                f"""
                select {JOB_COLUMNS}
                from doc_jobs
                where repository_id = $1::uuid and status = 'completed'
                order by created_at desc
                limit 1
                """,
                repository_id,
            )
        return self._job_row_to_record(row) if row else None

    async def get_source_repository(self, repository_id: str) -> SourceRepositoryRecord | None:
        try:
            async with self._translate_errors(not_found_on_bad_id=True):
                pool = await self._get_pool()
                row = await pool.fetchrow(
                    """
                    select id::text as id, full_name, default_branch, user_id::text as user_id
                    from source_repositories
                    where id = $1::uuid
                    """,
                    repository_id,
                )
        except JobNotFoundError:
            return None
        return self._repository_row_to_record(row) if row else None

    async def find_source_repositories(self, full_name: str) -> list[SourceRepositoryRecord]:
        async with self._translate_errors():
            pool = await self._get_pool()
            rows = await pool.fetch(
                """
                select id::text as id, full_name, default_branch, user_id::text as user_id
                from source_repositories
                where full_name = $1
                """,
                full_name,
            )
        return [self._repository_row_to_record(row) for row in rows]

    async def user_exists(self, user_id: str) -> bool:
        try:
            async with self._translate_errors(not_found_on_bad_id=True):
                pool = await self._get_pool()
                exists = await pool.fetchval("select 1 from app_users where id = $1::uuid", user_id)
        except JobNotFoundError:
            return False
        return bool(exists)

    @asynccontextmanager
    async def _translate_errors(self, *, not_found_on_bad_id: bool = False) -> AsyncIterator[None]:
        try:
            yield
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            if not_found_on_bad_id:
                raise JobNotFoundError("job not found") from exc
            raise
        except (
            pg_exc.SerializationError,
            pg_exc.DeadlockDetectedError,
            pg_exc.QueryCanceledError,
            asyncpg.PostgresConnectionError,
            asyncpg.InterfaceError,
            OSError,
            TimeoutError,
        ) as exc:
            raise StoreUnavailableError(f"database unavailable: {exc}") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("DOCJOBS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _encode(name: str, value: Any) -> Any:
        if name == "documents":
            return None if value is None else json.dumps([doc.to_dict() for doc in value])
        if name == "summary":
            return None if value is None else json.dumps(value.to_dict())
        return value

    @staticmethod
    def _decode_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value

    def _job_row_to_record(self, row: asyncpg.Record) -> JobRecord:
        documents = self._decode_json(row["documents"])
        summary = self._decode_json(row["summary"])
        return JobRecord(
            id=row["id"],
            repository_id=row["repository_id"],
            user_id=row["user_id"],
            prompt=row["prompt"],
            status=row["status"],
            callback_token=row["callback_token"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            progress=row["progress"],
            current_step=row["current_step"] or 0,
            total_steps=row["total_steps"] or 0,
            error=row["error"],
            cancel_requested=bool(row["cancel_requested"]),
            cancel_reason=row["cancel_reason"],
            completed_at=row["completed_at"],
            documents=[JobDocument.from_dict(item) for item in documents] if isinstance(documents, list) else None,
            summary=DocumentSummary.from_dict(summary) if isinstance(summary, dict) else None,
            version=row["version"],
        )

    @staticmethod
    def _repository_row_to_record(row: asyncpg.Record) -> SourceRepositoryRecord:
        return SourceRepositoryRecord(
            id=row["id"],
            full_name=row["full_name"],
            default_branch=row["default_branch"] or "main",
            user_id=row["user_id"],
        )


@lru_cache
def get_job_store() -> JobStore:
    settings = get_settings()
    if settings.store_backend == "memory":
        return InMemoryJobStore()
    return PostgresJobStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout=settings.store_timeout_seconds,
    )
