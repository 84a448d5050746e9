from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from profileops_api.config import Settings
from profileops_api.provider_client import ProviderClient, ProviderResult, build_provider_client
from profileops_api.run_registry import QueueRun, RunRegistry
from profileops_api.schemas import (
    CheckEmailStatusPayload,
    ResourceStatus,
    RunSummaryRead,
    TaskRead,
    TaskStatus,
)
from profileops_api.security import error_message_for_store
from profileops_api.store import InMemoryStore, NotFoundError

logger = logging.getLogger(__name__)

FORCE_STOP_MESSAGE = "Task stopped by user"

ProviderFactory = Callable[[Settings], ProviderClient]


class QueueBusyError(Exception):
    pass


@dataclass
class RunSummary:
    run_id: str
    attempted: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0
    stopped: bool = False
    duration_seconds: float = 0.0

    def to_read(self) -> RunSummaryRead:
        return RunSummaryRead(**self.__dict__)


class TaskQueue:
    """Sequential executor for the pending backlog.

    The caller registers ``run`` with the :class:`RunRegistry` before calling
    :meth:`process_pending_tasks`; the queue only reads the run's stop flag.
    Stops are cooperative: a task already handed to the provider always runs
    to completion before the flag is looked at again.
    """

    def __init__(self, store: InMemoryStore, provider: ProviderClient, run: QueueRun) -> None:
        self._store = store
        self._provider = provider
        self._run = run

    def process_pending_tasks(self) -> RunSummary:
        summary = RunSummary(run_id=self._run.run_id)
        started = time.monotonic()
        tasks = self._store.list_pending()
        logger.info("queue run %s: %d pending task(s)", self._run.run_id, len(tasks))
        self._record_run_event("queue.run_started", {"run_id": self._run.run_id, "pending": len(tasks)})

        for index, task in enumerate(tasks):
            if self._run.stop_requested:
                summary.stopped = True
                summary.remaining = len(tasks) - index
                logger.info(
                    "queue run %s stopped before task %s, %d task(s) left pending",
                    self._run.run_id,
                    task.id,
                    summary.remaining,
                )
                break
            outcome = self._process_task(task)
            if outcome is None:
                summary.skipped += 1
                continue
            summary.attempted += 1
            if outcome == TaskStatus.COMPLETED:
                summary.completed += 1
            elif outcome == TaskStatus.FAILED:
                summary.failed += 1

        summary.duration_seconds = round(time.monotonic() - started, 3)
        self._record_run_event("queue.run_finished", summary.__dict__.copy())
        logger.info(
            "queue run %s finished: completed=%d failed=%d skipped=%d remaining=%d stopped=%s",
            summary.run_id,
            summary.completed,
            summary.failed,
            summary.skipped,
            summary.remaining,
            summary.stopped,
        )
        return summary

    def _process_task(self, task: TaskRead) -> TaskStatus | None:
        """Run one task.

        Returns None when the task was left pending, otherwise the status the
        store holds afterwards. RUNNING means the provider was called but the
        outcome could not be written.
        """
        try:
            resource = self._store.get_resource(task.resource_ref)
        except NotFoundError:
            return self._fail_without_resource(task)
        except Exception:
            logger.exception("task %s: resource lookup failed, leaving pending", task.id)
            return None

        if resource.status == ResourceStatus.RUNNING:
            logger.warning("task %s: resource %s is already running, skipping", task.id, resource.id)
            return None

        try:
            self._store.transition_task(task.id, TaskStatus.RUNNING, expected=TaskStatus.PENDING)
        except Exception:
            logger.exception("task %s: could not mark running, leaving pending", task.id)
            return None
        try:
            self._store.update_resource_status(resource.id, ResourceStatus.RUNNING)
        except Exception:
            logger.exception("task %s: could not mark resource %s running, reverting", task.id, resource.id)
            self._revert_to_pending(task)
            return None

        logger.info("task %s: executing %s on %s", task.id, task.task_type.value, resource.id)
        result = self._execute(task, resource.provider_profile_id)

        if result.ok:
            return self._record_success(task, result)
        return self._record_failure(task, result)

    def _execute(self, task: TaskRead, profile_id: str) -> ProviderResult:
        try:
            return self._provider.execute(profile_id, task.payload)
        except Exception as exc:  # noqa: BLE001
            logger.exception("task %s: provider raised", task.id)
            return ProviderResult.failed(error_message_for_store(str(exc) or type(exc).__name__))

    def _record_success(self, task: TaskRead, result: ProviderResult) -> TaskStatus:
        try:
            status = self._store.transition_task(task.id, TaskStatus.COMPLETED, result=result.value).status
        except Exception:
            logger.exception("task %s: could not mark completed", task.id)
            status = self._stored_status(task)
        try:
            self._store.update_resource_status(task.resource_ref, ResourceStatus.IDLE, touch_last_run=True)
            if isinstance(task.payload, CheckEmailStatusPayload) and "status" in result.value:
                self._store.record_email_status(
                    task.resource_ref,
                    status=str(result.value["status"]),
                    message=result.value.get("message"),
                )
        except Exception:
            logger.exception("task %s: could not update resource %s after success", task.id, task.resource_ref)
        logger.info("task %s: completed, stored as %s", task.id, status.value)
        return status

    def _record_failure(self, task: TaskRead, result: ProviderResult) -> TaskStatus:
        failure = result.failure
        message = failure.message if failure is not None else "provider reported failure"
        try:
            status = self._store.transition_task(task.id, TaskStatus.FAILED, error_message=message).status
        except Exception:
            logger.exception("task %s: could not mark failed", task.id)
            status = self._stored_status(task)
        try:
            self._store.update_resource_status(task.resource_ref, ResourceStatus.ERROR, touch_last_run=True)
        except Exception:
            logger.exception("task %s: could not update resource %s after failure", task.id, task.resource_ref)
        logger.warning(
            "task %s: failed (retryable=%s): %s",
            task.id,
            failure.retryable if failure is not None else True,
            message,
        )
        return status

    def _stored_status(self, task: TaskRead) -> TaskStatus:
        try:
            return self._store.get_task(task.id).status
        except Exception:
            logger.exception("task %s: could not read back status", task.id)
            return TaskStatus.RUNNING

    def _record_run_event(self, event_type: str, payload: dict) -> None:
        try:
            self._store.append_event(event_type=event_type, payload=payload)
        except Exception:
            logger.exception("queue run %s: could not record %s", self._run.run_id, event_type)

    def _fail_without_resource(self, task: TaskRead) -> TaskStatus | None:
        logger.warning("task %s: resource %s not found", task.id, task.resource_ref)
        try:
            self._store.transition_task(task.id, TaskStatus.RUNNING, expected=TaskStatus.PENDING)
        except Exception:
            logger.exception("task %s: could not claim task with missing resource", task.id)
            return None
        try:
            return self._store.transition_task(
                task.id,
                TaskStatus.FAILED,
                error_message=f"resource {task.resource_ref} not found",
            ).status
        except Exception:
            logger.exception("task %s: could not record missing resource", task.id)
            return self._stored_status(task)

    def _revert_to_pending(self, task: TaskRead) -> None:
        try:
            self._store.transition_task(task.id, TaskStatus.PENDING, expected=TaskStatus.RUNNING)
        except Exception:
            logger.exception("task %s: revert to pending failed, left running for reconciliation", task.id)


def trigger_queue_run(
    settings: Settings,
    store: InMemoryStore,
    registry: RunRegistry,
    provider_factory: ProviderFactory = build_provider_client,
) -> RunSummary:
    """Validate configuration, take the run slot, process the backlog and release the slot.

    Raises ``ConfigurationError`` before the registry is touched and
    ``QueueBusyError`` when another run is active.
    """
    settings.require_provider_credentials()
    provider = provider_factory(settings)
    run = QueueRun()
    if not registry.register(run):
        raise QueueBusyError("queue already processing")
    try:
        return TaskQueue(store, provider, run).process_pending_tasks()
    finally:
        registry.clear(run)


def stop_queue_run(registry: RunRegistry) -> bool:
    return registry.request_stop()


def force_stop_running(store: InMemoryStore, message: str = FORCE_STOP_MESSAGE) -> list[TaskRead]:
    """Fail every running task and idle its resource.

    This does not go through the run registry. If a run is mid-task the task
    stays failed: the engine's later completed/failed write is rejected by the
    store's transition check and logged, while its resource write still lands.
    """
    stopped = store.fail_running_tasks(message)
    for resource_ref in dict.fromkeys(task.resource_ref for task in stopped):
        try:
            store.update_resource_status(resource_ref, ResourceStatus.IDLE)
        except NotFoundError:
            logger.warning("force stop: resource %s no longer exists", resource_ref)
    logger.info("force stop: %d running task(s) failed", len(stopped))
    return stopped
