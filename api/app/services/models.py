from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobStatus = Literal[
    "pending",
    "claimed",
    "cloning",
    "analyzing",
    "gathering",
    "running",
    "completed",
    "failed",
    "canceled",
    "dead",
]
DocumentKind = Literal["chapter", "tutorial", "toc", "yaml"]

ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "claimed", "cloning", "analyzing", "gathering", "running"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "canceled", "dead"})
# `dead` is reserved for the stuck-job reclaimer.
CALLBACK_STATUSES: frozenset[str] = (ACTIVE_STATUSES | TERMINAL_STATUSES) - {"dead"}


def is_active(status: str) -> bool:
    return status in ACTIVE_STATUSES


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


@dataclass(slots=True)
class JobDocument:
    slug: str
    title: str
    kind: DocumentKind
    chapter_index: int
    content: str
    source_key: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "title": self.title,
            "kind": self.kind,
            "chapter_index": self.chapter_index,
            "content": self.content,
            "source_key": self.source_key,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JobDocument:
        return cls(
            slug=str(raw.get("slug") or ""),
            title=str(raw.get("title") or ""),
            kind=raw.get("kind") or "chapter",
            chapter_index=int(raw.get("chapter_index") or 0),
            content=str(raw.get("content") or ""),
            source_key=str(raw.get("source_key") or ""),
        )


@dataclass(slots=True)
class DocumentSummary:
    chapters_count: int
    tutorials_count: int
    docs_count: int
    skipped_count: int
    generated_at: datetime
    rejected_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "chapters_count": self.chapters_count,
            "tutorials_count": self.tutorials_count,
            "docs_count": self.docs_count,
            "skipped_count": self.skipped_count,
            "rejected_count": self.rejected_count,
            "generated_at": self.generated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DocumentSummary:
        generated_at = raw.get("generated_at")
        if isinstance(generated_at, str):
            generated_at = datetime.fromisoformat(generated_at.replace("Z", "+00:00"))
        return cls(
            chapters_count=int(raw.get("chapters_count") or 0),
            tutorials_count=int(raw.get("tutorials_count") or 0),
            docs_count=int(raw.get("docs_count") or 0),
            skipped_count=int(raw.get("skipped_count") or 0),
            generated_at=generated_at,
            rejected_count=int(raw.get("rejected_count") or 0),
        )


@dataclass(slots=True)
class JobRecord:
    id: str
    repository_id: str
    user_id: str
    prompt: str
    status: JobStatus
    callback_token: str
    created_at: datetime
    updated_at: datetime
    progress: str | None = None
    current_step: int = 0
    total_steps: int = 0
    error: str | None = None
    cancel_requested: bool = False
    cancel_reason: str | None = None
    completed_at: datetime | None = None
    documents: list[JobDocument] | None = None
    summary: DocumentSummary | None = None
    version: int = 1


@dataclass(slots=True)
class SourceRepositoryRecord:
    id: str
    full_name: str
    default_branch: str = "main"
    user_id: str | None = None


@dataclass(slots=True)
class AdmissionResult:
    job_id: str
    callback_token: str
    status: JobStatus
    created: bool
    prompt: str = ""


@dataclass(slots=True)
class JobStatusView:
    id: str
    status: JobStatus
    cancel_requested: bool
    current_step: int
    total_steps: int
    progress: str | None


@dataclass(slots=True)
class SweepResult:
    cleared_jobs_count: int
    repositories_processed: int
    cleared_job_ids: list[str] = field(default_factory=list)
