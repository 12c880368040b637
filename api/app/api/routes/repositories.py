from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_status_query_service
from app.api.routes.jobs import document_out, summary_out
from app.core.auth import Principal
from app.core.security import get_human_principal, require_scopes
from app.schemas.jobs import RepositoryDocumentsOut
from app.services.errors import JobAccessDeniedError, JobNotFoundError, StoreUnavailableError
from app.services.status import StatusQueryService

router = APIRouter()


@router.get("/{repository_id}/documents", response_model=RepositoryDocumentsOut)
async def get_repository_documents(
    repository_id: str,
    principal: Principal = Depends(get_human_principal),
    queries: StatusQueryService = Depends(get_status_query_service),
) -> RepositoryDocumentsOut:
    require_scopes(principal, {"jobs:read"})

    try:
        job, documents = await queries.get_latest_documents(
            repository_id,
            requested_by=principal.subject,
            is_admin=principal.is_admin,
        )
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobAccessDeniedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return RepositoryDocumentsOut(
        repository_id=repository_id,
        job_id=job.id if job else None,
        documents=[document_out(document) for document in documents],
        summary=summary_out(job.summary) if job else None,
    )
