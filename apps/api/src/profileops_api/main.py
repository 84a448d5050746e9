from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from profileops_api.config import ConfigurationError, Settings
from profileops_api.logging_setup import setup_logging
from profileops_api.provider_client import build_provider_client
from profileops_api.run_registry import RunRegistry
from profileops_api.schemas import (
    EventRead,
    QueueProcessResponse,
    QueueStatusResponse,
    QueueStopResponse,
    ResourceCreate,
    ResourceRead,
    TaskBulkCreate,
    TaskBulkResponse,
    TaskCountResponse,
    TaskCreate,
    TaskRead,
    TaskRetryRequest,
    TaskRetryResponse,
    TaskStatus,
)
from profileops_api.security import redact_sensitive_text
from profileops_api.store import ConflictError, InMemoryStore, NotFoundError, ValidationError
from profileops_api.task_queue import (
    ProviderFactory,
    QueueBusyError,
    force_stop_running,
    stop_queue_run,
    trigger_queue_run,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_registry(request: Request) -> RunRegistry:
    return request.app.state.registry


def get_provider_factory(request: Request) -> ProviderFactory:
    return request.app.state.provider_factory


SettingsDep = Annotated[Settings, Depends(get_settings)]
StoreDep = Annotated[InMemoryStore, Depends(get_store)]
RegistryDep = Annotated[RunRegistry, Depends(get_registry)]
ProviderFactoryDep = Annotated[ProviderFactory, Depends(get_provider_factory)]


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/resources", response_model=ResourceRead)
def create_resource(payload: ResourceCreate, store: StoreDep) -> ResourceRead:
    try:
        return store.create_resource(payload)
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.get("/resources", response_model=list[ResourceRead])
def list_resources(store: StoreDep) -> list[ResourceRead]:
    return store.list_resources()


@router.get("/resources/{resource_ref}", response_model=ResourceRead)
def get_resource(resource_ref: str, store: StoreDep) -> ResourceRead:
    try:
        return store.get_resource(resource_ref)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/tasks", response_model=TaskRead)
def create_task(payload: TaskCreate, store: StoreDep) -> TaskRead:
    try:
        return store.create_task(payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post("/tasks/bulk", response_model=TaskBulkResponse)
def create_tasks_bulk(payload: TaskBulkCreate, store: StoreDep) -> TaskBulkResponse:
    try:
        tasks = store.create_tasks_bulk(payload.resource_refs, payload.payload, sequential=payload.sequential)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return TaskBulkResponse(count=len(tasks), tasks=tasks)


@router.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    store: StoreDep,
    status: TaskStatus | None = None,
    resource_ref: str | None = None,
    limit: int = 100,
) -> list[TaskRead]:
    return store.list_tasks(status=status, resource_ref=resource_ref, limit=limit)


@router.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(task_id: int, store: StoreDep) -> TaskRead:
    try:
        return store.get_task(task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/tasks/retry", response_model=TaskRetryResponse)
def retry_tasks(payload: TaskRetryRequest, store: StoreDep) -> TaskRetryResponse:
    tasks = store.retry_tasks(payload.task_ids)
    logger.info("retried %d of %d requested task(s)", len(tasks), len(payload.task_ids))
    return TaskRetryResponse(count=len(tasks), tasks=tasks)


@router.delete("/tasks/clear-pending", response_model=TaskCountResponse)
def clear_pending_tasks(store: StoreDep) -> TaskCountResponse:
    count = store.clear_pending()
    logger.info("cleared %d pending task(s)", count)
    return TaskCountResponse(count=count, message=f"Cleared {count} pending task{'' if count == 1 else 's'}")


@router.post("/tasks/stop-running", response_model=TaskCountResponse)
def stop_running_tasks(store: StoreDep) -> TaskCountResponse:
    stopped = force_stop_running(store)
    count = len(stopped)
    return TaskCountResponse(count=count, message=f"Stopped {count} running task{'' if count == 1 else 's'}")


@router.post("/queue/process", response_model=QueueProcessResponse)
def process_queue(
    settings: SettingsDep,
    store: StoreDep,
    registry: RegistryDep,
    provider_factory: ProviderFactoryDep,
) -> QueueProcessResponse:
    try:
        summary = trigger_queue_run(settings, store, registry, provider_factory)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except QueueBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("queue run failed")
        detail = redact_sensitive_text(str(exc), secrets=[settings.provider_api_key]) or "queue run failed"
        raise HTTPException(status_code=500, detail=detail) from exc

    message = "Queue stopped after current task" if summary.stopped else "Queue processed"
    return QueueProcessResponse(success=True, message=message, summary=summary.to_read())


@router.post("/queue/stop", response_model=QueueStopResponse)
def stop_queue(registry: RegistryDep) -> QueueStopResponse:
    if stop_queue_run(registry):
        return QueueStopResponse(stopped=True, message="Queue stop requested - will abort after current task")
    return QueueStopResponse(stopped=False, message="No queue currently processing")


@router.get("/queue/status", response_model=QueueStatusResponse)
def queue_status(registry: RegistryDep) -> QueueStatusResponse:
    run = registry.current()
    if run is None:
        return QueueStatusResponse(active=False)
    return QueueStatusResponse(
        active=True,
        run_id=run.run_id,
        started_at=run.started_at,
        stop_requested=run.stop_requested,
    )


@router.get("/events", response_model=list[EventRead])
def list_events(
    store: StoreDep,
    task_id: int | None = None,
    resource_ref: str | None = None,
    event_type: str | None = None,
    limit: int = 200,
) -> list[EventRead]:
    return store.list_events(task_id=task_id, resource_ref=resource_ref, event_type=event_type, limit=limit)


def create_app(
    settings: Settings | None = None,
    *,
    store: InMemoryStore | None = None,
    registry: RunRegistry | None = None,
    provider_factory: ProviderFactory = build_provider_client,
    configure_logging: bool = False,
) -> FastAPI:
    settings = settings or Settings.from_env()
    if configure_logging:
        setup_logging(level=settings.log_level, log_file=settings.log_file)

    app = FastAPI(title="profileops api", version="0.1.0")
    app.state.settings = settings
    app.state.store = store or InMemoryStore(state_file=settings.state_file)
    app.state.registry = registry or RunRegistry()
    app.state.provider_factory = provider_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_origin_regex=settings.cors_allow_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    logger.info("profileops api ready provider_mode=%s", settings.provider_mode)
    return app


app = create_app(configure_logging=True)
