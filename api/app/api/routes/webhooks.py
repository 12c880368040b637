import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError

from app.api.deps import get_callback_gateway
from app.core.rate_limit import enforce_rate_limit
from app.schemas.callbacks import CallbackAckOut, JobCallbackIn, WebhookHealthOut
from app.services.callbacks import CallbackEvent, CallbackGateway
from app.services.documents import ReportedFile
from app.services.errors import (
    CallbackAuthError,
    DocumentPersistenceError,
    JobNotFoundError,
    JobStateConflictError,
    JobValidationError,
    StoreUnavailableError,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/job-callback", response_model=CallbackAckOut, dependencies=[Depends(enforce_rate_limit)])
async def job_callback(
    request: Request,
    gateway: CallbackGateway = Depends(get_callback_gateway),
    x_job_token: str | None = Header(default=None, alias="X-Job-Token"),
) -> CallbackAckOut:
    # Malformed bodies are a 400 here, not FastAPI's default 422.
    try:
        raw = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid JSON body") from exc
    try:
        payload = JobCallbackIn.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_describe(exc)) from exc

    event = CallbackEvent(
        job_id=payload.job_id,
        type=payload.type,
        status=payload.status,
        progress=payload.progress,
        step=payload.step,
        total_steps=payload.total_steps,
        error=payload.error,
        files=(
            [ReportedFile(path=item.path, type=item.type, content=item.content) for item in payload.files]
            if payload.files is not None
            else None
        ),
    )

    try:
        outcome = await gateway.handle(event, x_job_token)
    except JobValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except CallbackAuthError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobStateConflictError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (DocumentPersistenceError, StoreUnavailableError) as exc:
        logger.error("callback failed job_id=%s: %s", event.job_id, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return CallbackAckOut(type=outcome.event_type, applied=outcome.applied, status=outcome.job.status)


@router.get("/job-callback", response_model=WebhookHealthOut)
async def job_callback_health() -> WebhookHealthOut:
    return WebhookHealthOut()


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "invalid payload"
