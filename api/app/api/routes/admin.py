from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_stuck_job_reclaimer
from app.core.auth import Principal
from app.core.rate_limit import enforce_rate_limit
from app.core.security import get_human_principal, require_scopes
from app.schemas.admin import ClearStuckJobsRequest, ReclaimStaleJobsRequest, SweepOut
from app.services.errors import JobValidationError, StoreUnavailableError
from app.services.models import SweepResult
from app.services.reclaimer import StuckJobReclaimer

router = APIRouter(dependencies=[Depends(enforce_rate_limit)])


@router.post("/jobs/clear-stuck", response_model=SweepOut)
async def clear_stuck_jobs(
    payload: ClearStuckJobsRequest,
    principal: Principal = Depends(get_human_principal),
    reclaimer: StuckJobReclaimer = Depends(get_stuck_job_reclaimer),
) -> SweepOut:
    require_scopes(principal, {"jobs:admin"})

    try:
        result = await reclaimer.clear_repository(payload.repository_full_name)
    except JobValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return _sweep_out(result)


@router.post("/jobs/reclaim-stale", response_model=SweepOut)
async def reclaim_stale_jobs(
    payload: ReclaimStaleJobsRequest,
    principal: Principal = Depends(get_human_principal),
    reclaimer: StuckJobReclaimer = Depends(get_stuck_job_reclaimer),
) -> SweepOut:
    require_scopes(principal, {"jobs:admin"})

    try:
        result = await reclaimer.reclaim_stale(stale_after_seconds=payload.stale_after_seconds)
    except JobValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return _sweep_out(result)


def _sweep_out(result: SweepResult) -> SweepOut:
    return SweepOut(
        cleared_jobs_count=result.cleared_jobs_count,
        repositories_processed=result.repositories_processed,
        cleared_job_ids=result.cleared_job_ids,
    )
