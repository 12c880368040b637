from pydantic import Field

from app.schemas.jobs import CamelModel


class ClearStuckJobsRequest(CamelModel):
    repository_full_name: str = Field(min_length=1, max_length=200)


class ReclaimStaleJobsRequest(CamelModel):
    stale_after_seconds: int | None = Field(default=None, ge=0)


class SweepOut(CamelModel):
    success: bool = True
    cleared_jobs_count: int
    repositories_processed: int
    cleared_job_ids: list[str] = Field(default_factory=list)
