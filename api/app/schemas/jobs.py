from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.services.models import DocumentKind, JobStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobCreateRequest(CamelModel):
    repository_id: str = Field(min_length=1)
    prompt: str | None = Field(default=None, max_length=10_000)


class JobAdmissionOut(CamelModel):
    job_id: str
    created: bool
    status: JobStatus
    dispatched: bool = False


class JobStatusOut(CamelModel):
    id: str
    status: JobStatus
    cancel_requested: bool
    current_step: int
    total_steps: int
    progress: str | None = None


class DocumentSummaryOut(CamelModel):
    chapters_count: int
    tutorials_count: int
    docs_count: int
    skipped_count: int
    rejected_count: int
    generated_at: datetime


class JobOut(CamelModel):
    id: str
    repository_id: str
    status: JobStatus
    prompt: str
    progress: str | None = None
    current_step: int
    total_steps: int
    error: str | None = None
    cancel_requested: bool
    cancel_reason: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    summary: DocumentSummaryOut | None = None


class DocumentOut(CamelModel):
    slug: str
    title: str
    kind: DocumentKind
    chapter_index: int
    content: str


class JobDocumentsOut(CamelModel):
    job_id: str
    status: JobStatus
    documents: list[DocumentOut] = Field(default_factory=list)
    summary: DocumentSummaryOut | None = None


class RepositoryDocumentsOut(CamelModel):
    repository_id: str
    job_id: str | None = None
    documents: list[DocumentOut] = Field(default_factory=list)
    summary: DocumentSummaryOut | None = None


class CancelRequest(CamelModel):
    reason: str | None = Field(default=None, max_length=500)


class CancelOut(CamelModel):
    job_id: str
    status: JobStatus
    cancel_requested: bool
    cancel_reason: str | None = None
