from fastapi import Depends

from app.core.config import Settings, get_settings
from app.services.admission import AdmissionController
from app.services.callbacks import CallbackGateway
from app.services.cancellation import CancellationHandler
from app.services.dispatch import WorkerDispatcher
from app.services.reclaimer import StuckJobReclaimer
from app.services.repository import get_job_store
from app.services.status import StatusQueryService
from app.services.store import JobStore


def get_admission_controller(
    store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_settings),
) -> AdmissionController:
    return AdmissionController(store, settings)


def get_callback_gateway(
    store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_settings),
) -> CallbackGateway:
    return CallbackGateway(store, settings)


def get_cancellation_handler(
    store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_settings),
) -> CancellationHandler:
    return CancellationHandler(store, settings)


def get_stuck_job_reclaimer(
    store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_settings),
) -> StuckJobReclaimer:
    return StuckJobReclaimer(store, settings)


def get_status_query_service(
    store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_settings),
) -> StatusQueryService:
    return StatusQueryService(store, settings)


def get_worker_dispatcher(
    store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_settings),
) -> WorkerDispatcher:
    return WorkerDispatcher(store, settings)
