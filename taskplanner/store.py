# taskplanner/store.py
"""
Persistence boundary.

The service only talks to a ``ScheduleStore``; the in-memory store below is
used by the demo, the Streamlit app and the tests. Events carry a version
counter: a write whose version does not match the stored one was based on a
stale read and is rejected with ConcurrencyConflictError.
"""
import copy
from dataclasses import replace
from typing import Dict, List, Optional, Protocol

from .errors import ConcurrencyConflictError
from .models import DateRange, EventStatus, ScheduleEvent, Task, TaskDependency


class ScheduleStore(Protocol):
    async def save_event(self, event: ScheduleEvent) -> ScheduleEvent:
        """Create or update an event; returns the stored copy with its new version."""
        ...

    async def delete_event(self, event_id: str, expected_version: Optional[int] = None) -> None:
        ...

    async def list_events(self, date_range: Optional[DateRange] = None) -> List[ScheduleEvent]:
        ...

    async def replace_generated_events(self, date_range: DateRange,
                                       events: List[ScheduleEvent]) -> List[ScheduleEvent]:
        """
        Swap the optimizer-owned events inside ``date_range``, and any other
        optimizer-owned event of a task in ``events``, for ``events``.
        """
        ...

    async def save_dependency(self, dependency: TaskDependency) -> None:
        ...

    async def delete_dependency(self, dependency_id: str) -> None:
        ...

    async def save_task(self, task: Task) -> None:
        ...

    async def delete_task(self, task_id: str) -> None:
        ...


def _is_generated(event: ScheduleEvent) -> bool:
    return not event.is_manual_override and event.status == EventStatus.SCHEDULED


class InMemoryScheduleStore:
    def __init__(self):
        self._events: Dict[str, ScheduleEvent] = {}
        self._dependencies: Dict[str, TaskDependency] = {}
        self._tasks: Dict[str, Task] = {}

    def _check_version(self, event: ScheduleEvent) -> None:
        stored = self._events.get(event.id)
        if stored is None:
            if event.version != 0:
                raise ConcurrencyConflictError(event.id, "event no longer exists")
        elif stored.version != event.version:
            raise ConcurrencyConflictError(
                event.id, f"stored version {stored.version}, got {event.version}")

    async def save_event(self, event: ScheduleEvent) -> ScheduleEvent:
        self._check_version(event)
        stored = replace(copy.deepcopy(event), version=event.version + 1)
        self._events[event.id] = stored
        return copy.deepcopy(stored)

    async def delete_event(self, event_id: str, expected_version: Optional[int] = None) -> None:
        stored = self._events.get(event_id)
        if stored is None:
            return
        if expected_version is not None and stored.version != expected_version:
            raise ConcurrencyConflictError(
                event_id, f"stored version {stored.version}, got {expected_version}")
        del self._events[event_id]

    async def list_events(self, date_range: Optional[DateRange] = None) -> List[ScheduleEvent]:
        events = [
            ev for ev in self._events.values()
            if date_range is None or ev.day in date_range
        ]
        return copy.deepcopy(sorted(events, key=lambda e: (e.day, e.start_min, e.id)))

    async def replace_generated_events(self, date_range: DateRange,
                                       events: List[ScheduleEvent]) -> List[ScheduleEvent]:
        placed = {ev.source_task_id for ev in events}
        for event_id in [eid for eid, ev in self._events.items()
                         if _is_generated(ev)
                         and (ev.day in date_range or ev.source_task_id in placed)]:
            del self._events[event_id]
        saved = []
        for event in events:
            stored = self._events.get(event.id)
            if stored is not None and not _is_generated(stored):
                raise ConcurrencyConflictError(event.id, "id taken by a manual event")
            version = stored.version + 1 if stored is not None else 1
            self._events[event.id] = replace(copy.deepcopy(event), version=version)
            saved.append(copy.deepcopy(self._events[event.id]))
        return saved

    async def save_dependency(self, dependency: TaskDependency) -> None:
        self._dependencies[dependency.id] = dependency

    async def delete_dependency(self, dependency_id: str) -> None:
        self._dependencies.pop(dependency_id, None)

    async def list_dependencies(self) -> List[TaskDependency]:
        return sorted(self._dependencies.values(), key=lambda d: d.id)

    async def save_task(self, task: Task) -> None:
        self._tasks[task.id] = copy.deepcopy(task)

    async def delete_task(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)

    async def list_tasks(self) -> List[Task]:
        return copy.deepcopy(sorted(self._tasks.values(), key=lambda t: t.id))
