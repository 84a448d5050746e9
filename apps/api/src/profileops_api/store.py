from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter

from profileops_api.schemas import (
    TERMINAL_TASK_STATUSES,
    EventRead,
    ResourceCreate,
    ResourceRead,
    ResourceStatus,
    TaskCreate,
    TaskPayload,
    TaskRead,
    TaskStatus,
)

logger = logging.getLogger(__name__)

BULK_SEQUENTIAL_SPACING_SECONDS = 5
MAX_EVENTS = 5000

_PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(TaskPayload)

# running -> pending is the engine's rollback when the resource write fails
# right after a task was marked running.
_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PENDING}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
}


class NotFoundError(Exception):
    pass


class ConflictError(Exception):
    pass


class ValidationError(Exception):
    pass


class InvalidTransitionError(Exception):
    pass


@dataclass
class _ResourceRecord:
    id: str
    name: str
    provider_profile_id: str
    status: str = ResourceStatus.IDLE.value
    last_run: str | None = None
    email_status: str | None = None
    email_status_message: str | None = None
    email_status_checked_at: str | None = None


@dataclass
class _TaskRecord:
    id: int
    resource_ref: str
    task_type: str
    payload: dict[str, Any]
    scheduled_at: str
    created_at: str
    status: str = TaskStatus.PENDING.value
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None


class InMemoryStore:
    """Task and resource table shared by the API handlers and the queue engine.

    Every public method holds the store lock, so single-row updates are atomic
    with respect to each other. When ``state_file`` is set the full state is
    snapshotted to JSON after every mutation and restored on construction. A
    mutation whose snapshot fails is rolled back in memory before the error
    propagates, so readers never see a change that was not persisted.
    """

    def __init__(self, state_file: str | None = None) -> None:
        self._state_file = Path(state_file).expanduser() if state_file else None
        self._lock = threading.RLock()
        self._resources: dict[str, _ResourceRecord] = {}
        self._tasks: dict[int, _TaskRecord] = {}
        self._events: list[EventRead] = []
        self._task_seq = 1
        self._event_seq = 1
        self._in_mutation = False
        self._load_state()

    # resources

    def create_resource(self, resource: ResourceCreate) -> ResourceRead:
        with self._mutation():
            if resource.id in self._resources:
                raise ConflictError(f"resource {resource.id} already exists")
            record = _ResourceRecord(
                id=resource.id,
                name=resource.name,
                provider_profile_id=resource.provider_profile_id or resource.id,
            )
            self._resources[record.id] = record
            self._append_event(event_type="resource.created", resource_ref=record.id)
            return self._to_resource_read(record)

    def list_resources(self) -> list[ResourceRead]:
        with self._lock:
            return [self._to_resource_read(record) for record in self._resources.values()]

    def get_resource(self, resource_ref: str) -> ResourceRead:
        with self._lock:
            return self._to_resource_read(self._require_resource(resource_ref))

    def update_resource_status(
        self,
        resource_ref: str,
        status: ResourceStatus,
        *,
        touch_last_run: bool = False,
    ) -> ResourceRead:
        with self._mutation():
            record = self._require_resource(resource_ref)
            previous = record.status
            record.status = status.value
            if touch_last_run:
                record.last_run = self._utc_now()
            if previous != record.status:
                self._append_event(
                    event_type="resource.status_changed",
                    resource_ref=resource_ref,
                    payload={"from": previous, "to": record.status},
                )
            return self._to_resource_read(record)

    def record_email_status(self, resource_ref: str, *, status: str, message: str | None) -> ResourceRead:
        with self._mutation():
            record = self._require_resource(resource_ref)
            record.email_status = status
            record.email_status_message = message
            record.email_status_checked_at = self._utc_now()
            return self._to_resource_read(record)

    # tasks

    def create_task(self, task: TaskCreate) -> TaskRead:
        with self._mutation():
            self._require_resource(task.resource_ref)
            scheduled_at = self._normalize_timestamp(task.scheduled_at) if task.scheduled_at else None
            record = self._insert_task(
                resource_ref=task.resource_ref,
                payload=task.payload.model_dump(mode="json"),
                scheduled_at=scheduled_at,
            )
            return self._to_task_read(record)

    def create_tasks_bulk(
        self,
        resource_refs: Iterable[str],
        payload: TaskPayload,
        *,
        sequential: bool = False,
    ) -> list[TaskRead]:
        refs = list(resource_refs)
        with self._mutation():
            for resource_ref in refs:
                self._require_resource(resource_ref)
            now = datetime.now(timezone.utc)
            dumped = payload.model_dump(mode="json")
            created: list[_TaskRecord] = []
            for index, resource_ref in enumerate(refs):
                offset = timedelta(seconds=index * BULK_SEQUENTIAL_SPACING_SECONDS) if sequential else timedelta()
                created.append(
                    self._insert_task(
                        resource_ref=resource_ref,
                        payload=dict(dumped),
                        scheduled_at=(now + offset).isoformat(),
                    )
                )
            return [self._to_task_read(record) for record in created]

    def get_task(self, task_id: int) -> TaskRead:
        with self._lock:
            return self._to_task_read(self._require_task(task_id))

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        resource_ref: str | None = None,
        limit: int = 100,
    ) -> list[TaskRead]:
        with self._lock:
            records = [
                record
                for record in self._tasks.values()
                if (status is None or record.status == status.value)
                and (resource_ref is None or record.resource_ref == resource_ref)
            ]
            records.sort(key=lambda record: record.id, reverse=True)
            return [self._to_task_read(record) for record in records[: max(limit, 0)]]

    def list_pending(self) -> list[TaskRead]:
        """Pending tasks, oldest ``scheduled_at`` first, ties broken by id."""
        with self._lock:
            records = [record for record in self._tasks.values() if record.status == TaskStatus.PENDING.value]
            records.sort(key=lambda record: (self._parse_timestamp(record.scheduled_at), record.id))
            return [self._to_task_read(record) for record in records]

    def transition_task(
        self,
        task_id: int,
        status: TaskStatus,
        *,
        expected: TaskStatus | None = None,
        error_message: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> TaskRead:
        with self._mutation():
            record = self._require_task(task_id)
            current = TaskStatus(record.status)
            if expected is not None and current != expected:
                raise InvalidTransitionError(
                    f"task {task_id} is {current.value}, expected {expected.value}"
                )
            if status not in _ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(f"task {task_id} cannot move from {current.value} to {status.value}")

            now = self._utc_now()
            if status == TaskStatus.RUNNING:
                record.started_at = now
                record.completed_at = None
                record.error_message = None
                record.result = None
            elif status == TaskStatus.COMPLETED:
                record.completed_at = now
                record.error_message = None
                record.result = result
            elif status == TaskStatus.FAILED:
                message = (error_message or "").strip()
                if not message:
                    raise ValidationError("error_message is required for failed tasks")
                record.completed_at = now
                record.error_message = message
                record.result = None
            else:
                record.started_at = None
                record.completed_at = None
                record.error_message = None
                record.result = None
                if current in TERMINAL_TASK_STATUSES:
                    record.scheduled_at = now

            record.status = status.value
            payload: dict[str, Any] = {"from": current.value, "to": status.value}
            if record.error_message is not None:
                payload["error_message"] = record.error_message
            self._append_event(
                event_type=f"task.{status.value}",
                task_id=task_id,
                resource_ref=record.resource_ref,
                payload=payload,
            )
            return self._to_task_read(record)

    def retry_tasks(self, task_ids: Iterable[int]) -> list[TaskRead]:
        """Reset terminal tasks to pending; unknown or non-terminal ids are skipped."""
        retried: list[TaskRead] = []
        with self._mutation():
            for task_id in dict.fromkeys(task_ids):
                record = self._tasks.get(task_id)
                if record is None or TaskStatus(record.status) not in TERMINAL_TASK_STATUSES:
                    continue
                retried.append(self.transition_task(task_id, TaskStatus.PENDING))
        return retried

    def clear_pending(self) -> int:
        with self._mutation():
            pending_ids = [task_id for task_id, record in self._tasks.items() if record.status == TaskStatus.PENDING.value]
            for task_id in pending_ids:
                record = self._tasks.pop(task_id)
                self._append_event(event_type="task.deleted", task_id=task_id, resource_ref=record.resource_ref)
            return len(pending_ids)

    def fail_running_tasks(self, message: str) -> list[TaskRead]:
        with self._mutation():
            running_ids = [task_id for task_id, record in self._tasks.items() if record.status == TaskStatus.RUNNING.value]
            return [
                self.transition_task(task_id, TaskStatus.FAILED, error_message=message)
                for task_id in running_ids
            ]

    # events

    def list_events(
        self,
        *,
        task_id: int | None = None,
        resource_ref: str | None = None,
        event_type: str | None = None,
        limit: int = 200,
    ) -> list[EventRead]:
        with self._lock:
            events = [
                event
                for event in self._events
                if (task_id is None or event.task_id == task_id)
                and (resource_ref is None or event.resource_ref == resource_ref)
                and (event_type is None or event.event_type == event_type)
            ]
        if limit <= 0:
            return []
        return events[-limit:]

    def append_event(
        self,
        *,
        event_type: str,
        task_id: int | None = None,
        resource_ref: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> EventRead:
        with self._mutation():
            event = self._append_event(
                event_type=event_type,
                task_id=task_id,
                resource_ref=resource_ref,
                payload=payload,
            )
            return event

    # internals

    def _insert_task(self, *, resource_ref: str, payload: dict[str, Any], scheduled_at: str | None) -> _TaskRecord:
        now = self._utc_now()
        task_id = self._task_seq
        self._task_seq += 1
        record = _TaskRecord(
            id=task_id,
            resource_ref=resource_ref,
            task_type=str(payload["task_type"]),
            payload=payload,
            scheduled_at=scheduled_at or now,
            created_at=now,
        )
        self._tasks[task_id] = record
        self._append_event(
            event_type="task.created",
            task_id=task_id,
            resource_ref=resource_ref,
            payload={"task_type": record.task_type, "scheduled_at": record.scheduled_at},
        )
        return record

    def _require_resource(self, resource_ref: str) -> _ResourceRecord:
        record = self._resources.get(resource_ref)
        if record is None:
            raise NotFoundError(f"resource {resource_ref} not found")
        return record

    def _require_task(self, task_id: int) -> _TaskRecord:
        record = self._tasks.get(task_id)
        if record is None:
            raise NotFoundError(f"task {task_id} not found")
        return record

    def _append_event(
        self,
        *,
        event_type: str,
        task_id: int | None = None,
        resource_ref: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> EventRead:
        event = EventRead(
            id=self._event_seq,
            event_type=event_type,
            task_id=task_id,
            resource_ref=resource_ref,
            payload=payload or {},
            created_at=self._utc_now(),
        )
        self._event_seq += 1
        self._events.append(event)
        if len(self._events) > MAX_EVENTS:
            self._events = self._events[-MAX_EVENTS:]
        return event

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        with self._lock:
            if self._in_mutation:
                yield
                return

            resources = {key: replace(record) for key, record in self._resources.items()}
            tasks = {key: replace(record) for key, record in self._tasks.items()}
            events = list(self._events)
            task_seq, event_seq = self._task_seq, self._event_seq
            self._in_mutation = True
            try:
                yield
                self._persist_state()
            except Exception:
                self._resources, self._tasks, self._events = resources, tasks, events
                self._task_seq, self._event_seq = task_seq, event_seq
                raise
            finally:
                self._in_mutation = False

    def _persist_state(self) -> None:
        if self._state_file is None:
            return

        snapshot = self._snapshot()
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self._state_file.with_name(f"{self._state_file.name}.tmp")
        tmp_file.write_text(json.dumps(snapshot, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        tmp_file.replace(self._state_file)

    def _load_state(self) -> None:
        if self._state_file is None or not self._state_file.exists():
            return

        raw = self._state_file.read_text(encoding="utf-8")
        data = json.loads(raw)
        self._resources = {
            str(key): _ResourceRecord(**value)
            for key, value in data.get("resources", {}).items()
        }
        self._tasks = {
            int(key): _TaskRecord(**value)
            for key, value in data.get("tasks", {}).items()
        }
        self._events = [EventRead(**event) for event in data.get("events", [])]

        sequences = data.get("sequences", {})
        self._task_seq = int(sequences.get("task_seq", 1))
        self._event_seq = int(sequences.get("event_seq", 1))
        logger.info(
            "store restored state_file=%s resources=%d tasks=%d",
            self._state_file,
            len(self._resources),
            len(self._tasks),
        )

    def _snapshot(self) -> dict[str, Any]:
        return {
            "resources": {key: value.__dict__ for key, value in self._resources.items()},
            "tasks": {str(key): value.__dict__ for key, value in self._tasks.items()},
            "events": [event.model_dump() for event in self._events],
            "sequences": {
                "task_seq": self._task_seq,
                "event_seq": self._event_seq,
            },
        }

    @staticmethod
    def _to_resource_read(record: _ResourceRecord) -> ResourceRead:
        return ResourceRead(
            id=record.id,
            name=record.name,
            provider_profile_id=record.provider_profile_id,
            status=record.status,
            last_run=record.last_run,
            email_status=record.email_status,
            email_status_message=record.email_status_message,
            email_status_checked_at=record.email_status_checked_at,
        )

    @staticmethod
    def _to_task_read(record: _TaskRecord) -> TaskRead:
        return TaskRead(
            id=record.id,
            resource_ref=record.resource_ref,
            task_type=record.task_type,
            payload=_PAYLOAD_ADAPTER.validate_python(record.payload),
            status=record.status,
            scheduled_at=record.scheduled_at,
            created_at=record.created_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
            error_message=record.error_message,
            result=record.result,
        )

    @classmethod
    def _normalize_timestamp(cls, value: str) -> str:
        try:
            return cls._parse_timestamp(value).isoformat()
        except ValueError as exc:
            raise ValidationError(f"invalid timestamp: {value}") from exc

    @staticmethod
    def _parse_timestamp(value: str) -> datetime:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    @staticmethod
    def _utc_now() -> str:
        return datetime.now(timezone.utc).isoformat()
