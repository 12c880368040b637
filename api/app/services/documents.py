"""Turn worker-reported files into job documents."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from app.services.errors import DocumentPersistenceError
from app.services.models import DocumentKind, DocumentSummary, JobDocument

logger = logging.getLogger(__name__)

FIRST_INTEGER_RE = re.compile(r"(\d+)")
DOCUMENT_EXTENSION_RE = re.compile(r"\.(md|yaml)$")
SLUG_PREFIX_RE = re.compile(r"^(chapters|reviewed-chapters)/")
HEADING_RE = re.compile(r"\n(#{1,6}\s)")
EXCESS_BLANK_LINES_RE = re.compile(r"\n{3,}")


@dataclass(slots=True)
class ReportedFile:
    path: str | None
    type: str | None = None
    content: str | None = None


def classify_file(path: str | None, declared_type: str | None = None) -> DocumentKind:
    path = path or ""
    if "tutorial" in path:
        return "tutorial"
    if declared_type == "yaml" or path.endswith(".yaml"):
        return "yaml"
    if "toc" in path or "table" in path.lower():
        return "toc"
    return "chapter"


def chapter_index_for(path: str | None) -> int:
    match = FIRST_INTEGER_RE.search(path or "")
    if match is None:
        return 0
    return int(match.group(1))


def title_for(path: str | None) -> str:
    if not path:
        return "Document"
    return DOCUMENT_EXTENSION_RE.sub("", path).rsplit("/", 1)[-1]


def source_key_for(repository_id: str, slug: str, title: str) -> str:
    return f"{repository_id}:{SLUG_PREFIX_RE.sub('', slug)}:{title}"


def normalize_markdown(content: str) -> str:
    if not content:
        return content

    normalized = content.replace("\r\n", "\n").replace("\r", "\n")
    if normalized.count("```") % 2:
        normalized += "\n```\n"
    if not normalized.endswith("\n"):
        normalized += "\n"
    normalized = HEADING_RE.sub(r"\n\n\1", normalized)
    return EXCESS_BLANK_LINES_RE.sub("\n\n", normalized)


def build_documents(
    files: list[ReportedFile],
    *,
    repository_id: str,
    generated_at: datetime,
    max_bytes: int,
) -> tuple[list[JobDocument], DocumentSummary]:
    """Classify, normalize and de-duplicate reported files.

    Chapter and tutorial counts cover every reported file. Chapters and
    tutorials without content are rejected and not stored. The first file for a
    given source key wins; later duplicates are counted as skipped. Raises
    `DocumentPersistenceError` when the batch exceeds `max_bytes`.
    """

    documents: list[JobDocument] = []
    seen_keys: set[str] = set()
    skipped = 0
    rejected = 0
    total_bytes = 0
    fallback_slug = f"doc-{int(generated_at.timestamp() * 1000)}"
    kinds = [classify_file(reported.path, reported.type) for reported in files]

    for reported, kind in zip(files, kinds):
        if kind in {"chapter", "tutorial"} and not (reported.content or "").strip():
            logger.warning("rejecting empty document path=%s kind=%s", reported.path, kind)
            rejected += 1
            continue

        slug = reported.path or fallback_slug
        title = title_for(reported.path)
        key = source_key_for(repository_id, slug, title)
        if key in seen_keys:
            logger.warning("duplicate document in batch source_key=%s", key)
            skipped += 1
            continue
        seen_keys.add(key)

        raw_content = reported.content or ""
        content = raw_content if kind == "yaml" else normalize_markdown(raw_content)
        total_bytes += len(content.encode("utf-8"))
        if total_bytes > max_bytes:
            raise DocumentPersistenceError(
                f"documents exceed the {max_bytes} byte limit",
            )

        documents.append(
            JobDocument(
                slug=slug,
                title=title,
                kind=kind,
                chapter_index=chapter_index_for(reported.path) if kind == "chapter" else 0,
                content=content,
                source_key=key,
            )
        )

    summary = DocumentSummary(
        chapters_count=kinds.count("chapter"),
        tutorials_count=kinds.count("tutorial"),
        docs_count=len(documents),
        skipped_count=skipped,
        rejected_count=rejected,
        generated_at=generated_at,
    )
    return documents, summary
