from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import (
    get_admission_controller,
    get_cancellation_handler,
    get_status_query_service,
    get_worker_dispatcher,
)
from app.core.auth import Principal
from app.core.rate_limit import enforce_rate_limit
from app.core.security import get_human_principal, require_scopes
from app.schemas.jobs import (
    CancelOut,
    CancelRequest,
    DocumentOut,
    DocumentSummaryOut,
    JobAdmissionOut,
    JobCreateRequest,
    JobDocumentsOut,
    JobOut,
    JobStatusOut,
)
from app.services.admission import AdmissionController
from app.services.cancellation import CancellationHandler
from app.services.dispatch import WorkerDispatcher
from app.services.errors import (
    AdmissionConflictError,
    JobAccessDeniedError,
    JobAlreadyTerminalError,
    JobNotFoundError,
    JobValidationError,
    StoreUnavailableError,
)
from app.services.models import AdmissionResult, DocumentSummary, JobDocument, JobRecord
from app.services.status import StatusQueryService

router = APIRouter()


@router.get("", response_model=list[JobOut])
async def list_jobs(
    principal: Principal = Depends(get_human_principal),
    queries: StatusQueryService = Depends(get_status_query_service),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[JobOut]:
    require_scopes(principal, {"jobs:read"})

    try:
        jobs = await queries.list_user_jobs(principal.subject, limit=limit)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return [job_out(job) for job in jobs]


@router.post(
    "",
    response_model=JobAdmissionOut,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(enforce_rate_limit)],
)
async def create_job(
    payload: JobCreateRequest,
    principal: Principal = Depends(get_human_principal),
    admission: AdmissionController = Depends(get_admission_controller),
    dispatcher: WorkerDispatcher = Depends(get_worker_dispatcher),
) -> JobAdmissionOut:
    require_scopes(principal, {"jobs:write"})

    try:
        result = await admission.admit(
            repository_id=payload.repository_id,
            user_id=principal.subject,
            prompt=payload.prompt,
        )
    except JobValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except AdmissionConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return await _dispatch_admitted(result, payload.repository_id, admission, dispatcher)


@router.post(
    "/regenerate",
    response_model=JobAdmissionOut,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(enforce_rate_limit)],
)
async def regenerate_job(
    payload: JobCreateRequest,
    principal: Principal = Depends(get_human_principal),
    admission: AdmissionController = Depends(get_admission_controller),
    dispatcher: WorkerDispatcher = Depends(get_worker_dispatcher),
) -> JobAdmissionOut:
    require_scopes(principal, {"jobs:write"})

    try:
        repository = await admission.resolve_repository(payload.repository_id)
        if repository.user_id and repository.user_id != principal.subject and not principal.is_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="you can only regenerate your own repositories")
        result = await admission.regenerate(
            repository_id=payload.repository_id,
            user_id=principal.subject,
            prompt=payload.prompt,
        )
    except JobValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except AdmissionConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return await _dispatch_admitted(result, payload.repository_id, admission, dispatcher)


@router.get("/{job_id}/status", response_model=JobStatusOut)
async def get_job_status(
    job_id: str,
    queries: StatusQueryService = Depends(get_status_query_service),
) -> JobStatusOut:
    try:
        view = await queries.get_status(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return JobStatusOut(
        id=view.id,
        status=view.status,
        cancel_requested=view.cancel_requested,
        current_step=view.current_step,
        total_steps=view.total_steps,
        progress=view.progress,
    )


@router.get("/{job_id}/documents", response_model=JobDocumentsOut)
async def get_job_documents(
    job_id: str,
    principal: Principal = Depends(get_human_principal),
    queries: StatusQueryService = Depends(get_status_query_service),
) -> JobDocumentsOut:
    require_scopes(principal, {"jobs:read"})

    try:
        job = await queries.get_job(job_id, requested_by=principal.subject, is_admin=principal.is_admin)
    except JobAccessDeniedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return JobDocumentsOut(
        job_id=job.id,
        status=job.status,
        documents=[document_out(document) for document in queries.ordered_documents(job)],
        summary=summary_out(job.summary),
    )


@router.post("/{job_id}/cancel", response_model=CancelOut, dependencies=[Depends(enforce_rate_limit)])
async def cancel_job(
    job_id: str,
    payload: CancelRequest | None = None,
    principal: Principal = Depends(get_human_principal),
    cancellation: CancellationHandler = Depends(get_cancellation_handler),
) -> CancelOut:
    require_scopes(principal, {"jobs:write"})

    try:
        job = await cancellation.cancel(
            job_id,
            reason=payload.reason if payload else None,
            requested_by=principal.subject,
            is_admin=principal.is_admin,
        )
    except JobAlreadyTerminalError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except JobAccessDeniedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return CancelOut(
        job_id=job.id,
        status=job.status,
        cancel_requested=job.cancel_requested,
        cancel_reason=job.cancel_reason,
    )


async def _dispatch_admitted(
    result: AdmissionResult,
    repository_id: str,
    admission: AdmissionController,
    dispatcher: WorkerDispatcher,
) -> JobAdmissionOut:
    dispatched = False
    status_value = result.status
    if result.created:
        try:
            repository = await admission.resolve_repository(repository_id)
            dispatched = await dispatcher.dispatch(result, repository)
        except (JobNotFoundError, StoreUnavailableError) as exc:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
        if not dispatched and dispatcher.settings.worker_url:
            status_value = "failed"

    return JobAdmissionOut(job_id=result.job_id, created=result.created, status=status_value, dispatched=dispatched)


def summary_out(summary: DocumentSummary | None) -> DocumentSummaryOut | None:
    if summary is None:
        return None
    return DocumentSummaryOut(
        chapters_count=summary.chapters_count,
        tutorials_count=summary.tutorials_count,
        docs_count=summary.docs_count,
        skipped_count=summary.skipped_count,
        rejected_count=summary.rejected_count,
        generated_at=summary.generated_at,
    )


def document_out(document: JobDocument) -> DocumentOut:
    return DocumentOut(
        slug=document.slug,
        title=document.title,
        kind=document.kind,
        chapter_index=document.chapter_index,
        content=document.content,
    )


def job_out(job: JobRecord) -> JobOut:
    return JobOut(
        id=job.id,
        repository_id=job.repository_id,
        status=job.status,
        prompt=job.prompt,
        progress=job.progress,
        current_step=job.current_step,
        total_steps=job.total_steps,
        error=job.error,
        cancel_requested=job.cancel_requested,
        cancel_reason=job.cancel_reason,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
        summary=summary_out(job.summary),
    )
