# taskplanner/service.py
"""
Session-scoped planner API.

One PlannerService owns the task graph, the calendar events and the focus
blocks of a single user session. Mutations are serialised by an asyncio
lock, applied locally first and rolled back when the store rejects them.
Scheduler runs work on a snapshot in a worker thread and are reconciled
against the pins that exist when they finish.
"""
import asyncio
import copy
import functools
import threading
from dataclasses import dataclass, replace
from datetime import date
from typing import Dict, Iterable, List, Optional

import structlog

from .commands import OptimisticCommand
from .config import PlannerSettings
from .errors import ConcurrencyConflictError, OptimizationCancelled, ValidationError
from .graph import TaskGraph
from .models import (
    MINUTES_PER_DAY,
    DateRange,
    DependencyType,
    EventStatus,
    FocusTimeBlock,
    OptimizationConfig,
    OptimizationResult,
    ScheduleEvent,
    Task,
    TaskStatus,
    ValidationReason,
    ValidationResult,
    WindowTag,
)
from .placement import schedule_utility
from .reconcile import merge_with_pins
from .scheduler import generate_schedule, pinned_minutes, remaining_minutes
from .store import ScheduleStore

log = structlog.get_logger()


@dataclass
class PlannerSnapshot:
    graph: TaskGraph
    events: List[ScheduleEvent]
    focus_blocks: List[FocusTimeBlock]


@dataclass
class _SessionState:
    graph: TaskGraph
    events: Dict[str, ScheduleEvent]


def _check_times(start_min: int, end_min: int) -> None:
    if not 0 <= start_min < end_min <= MINUTES_PER_DAY:
        raise ValidationError(
            ValidationReason.INVALID_TIME,
            f"invalid event time {start_min}-{end_min}: "
            f"need 0 <= start < end <= {MINUTES_PER_DAY}",
        )


def _is_generated(event: ScheduleEvent) -> bool:
    return not event.is_manual_override and event.status == EventStatus.SCHEDULED


class PlannerService:
    def __init__(self, store: ScheduleStore,
                 settings: Optional[PlannerSettings] = None,
                 graph: Optional[TaskGraph] = None,
                 focus_blocks: Iterable[FocusTimeBlock] = ()):
        self._store = store
        self._settings = settings or PlannerSettings()
        self._graph = graph or TaskGraph()
        self._events: Dict[str, ScheduleEvent] = {}
        self._focus_blocks: List[FocusTimeBlock] = list(focus_blocks)
        self._lock = asyncio.Lock()
        self._cancel: Optional[threading.Event] = None

    # Read side

    @property
    def settings(self) -> PlannerSettings:
        return self._settings

    @property
    def graph(self) -> TaskGraph:
        return self._graph

    @property
    def focus_blocks(self) -> List[FocusTimeBlock]:
        return copy.deepcopy(self._focus_blocks)

    @property
    def is_optimizing(self) -> bool:
        return self._cancel is not None

    def get_event(self, event_id: str) -> Optional[ScheduleEvent]:
        return copy.deepcopy(self._events.get(event_id))

    def get_schedule(self, date_range: Optional[DateRange] = None) -> List[ScheduleEvent]:
        events = [
            ev for ev in self._events.values()
            if date_range is None or ev.day in date_range
        ]
        return copy.deepcopy(sorted(events, key=lambda e: (e.day, e.start_min, e.id)))

    def snapshot(self) -> PlannerSnapshot:
        return PlannerSnapshot(
            graph=self._graph.copy(),
            events=self.get_schedule(),
            focus_blocks=self.focus_blocks,
        )

    def validate_dependency(self, task_id: str, depends_on_task_id: str) -> ValidationResult:
        return self._graph.validate_dependency(task_id, depends_on_task_id)

    # Local state setters used by optimistic commands

    def _set_event(self, event_id: str, event: Optional[ScheduleEvent]) -> None:
        if event is None:
            self._events.pop(event_id, None)
        else:
            self._events[event_id] = event

    def _set_dependency(self, dependency_id: str, dependency) -> None:
        self._graph.remove_dependency(dependency_id)
        if dependency is not None:
            self._graph.insert_dependency(dependency)

    def _set_task(self, task_id: str, task: Optional[Task]) -> None:
        if task is None:
            self._graph.remove_task(task_id)
        elif task_id in self._graph:
            self._graph.update_task(task)
        else:
            self._graph.add_task(task)

    def _install_events(self, events: Dict[str, ScheduleEvent]) -> None:
        self._events = events

    def _install_state(self, state: _SessionState) -> None:
        self._graph = state.graph
        self._events = state.events

    async def _execute(self, command: OptimisticCommand):
        try:
            return await command.execute()
        except ConcurrencyConflictError as exc:
            log.warning("store_conflict", entity_id=exc.entity_id, kind=command.kind)
            await self._refetch_events()
            raise

    async def _refetch_events(self) -> None:
        events = await self._store.list_events()
        self._events = {ev.id: ev for ev in events}
        log.info("events_refetched", events=len(events))

    async def refresh_events(self) -> None:
        """Drop local event state and reload it from the store."""
        async with self._lock:
            await self._refetch_events()

    # Dependencies

    async def add_dependency(self, task_id: str, depends_on_task_id: str,
                             dependency_type: DependencyType = DependencyType.FINISH_TO_START,
                             lag_days: int = 0) -> ValidationResult:
        async with self._lock:
            result = self._graph.add_dependency(
                task_id, depends_on_task_id, dependency_type, lag_days)
            if not result.is_valid:
                return result
            dep = result.dependency
            await self._execute(OptimisticCommand(
                kind="dependency",
                previous=None,
                new=dep,
                apply=functools.partial(self._set_dependency, dep.id),
                confirm=functools.partial(self._store.save_dependency, dep),
            ))
            log.info("dependency_added", dependency_id=dep.id, task_id=task_id,
                     depends_on_task_id=depends_on_task_id)
            return result

    async def remove_dependency(self, dependency_id: str) -> bool:
        """Remove an edge; an unknown id is a successful no-op (returns False)."""
        async with self._lock:
            dep = self._graph.get_dependency(dependency_id)
            if dep is None:
                log.debug("dependency_remove_noop", dependency_id=dependency_id)
                return False
            await self._execute(OptimisticCommand(
                kind="dependency",
                previous=dep,
                new=None,
                apply=functools.partial(self._set_dependency, dependency_id),
                confirm=functools.partial(self._store.delete_dependency, dependency_id),
            ))
            log.info("dependency_removed", dependency_id=dependency_id)
            return True

    # Events

    def _manual_event_id(self, task_id: str) -> str:
        n = 1
        while f"evt-{task_id}-m{n}" in self._events:
            n += 1
        return f"evt-{task_id}-m{n}"

    def _tag_for(self, day: date, start_min: int, end_min: int) -> WindowTag:
        for block in self._focus_blocks:
            if (block.is_enabled and block.day_of_week == day.weekday()
                    and block.start_min <= start_min and end_min <= block.end_min):
                return WindowTag.FOCUS
        return WindowTag.REGULAR

    async def create_event(self, task_id: str, day: date,
                           start_min: int, end_min: int) -> ScheduleEvent:
        """Place a task by hand. The new event is pinned."""
        async with self._lock:
            if task_id not in self._graph:
                raise ValidationError(
                    ValidationReason.TASK_NOT_FOUND, f"task {task_id!r} not found")
            _check_times(start_min, end_min)
            event = ScheduleEvent(
                id=self._manual_event_id(task_id),
                source_task_id=task_id,
                day=day,
                start_min=start_min,
                end_min=end_min,
                is_manual_override=True,
                window_tag=self._tag_for(day, start_min, end_min),
            )
            stored = await self._execute(OptimisticCommand(
                kind="event",
                previous=None,
                new=event,
                apply=functools.partial(self._set_event, event.id),
                confirm=functools.partial(self._store.save_event, event),
            ))
            self._events[event.id] = stored
            log.info("event_created", event_id=event.id, task_id=task_id,
                     day=day.isoformat(), start_min=start_min, end_min=end_min)
            return copy.deepcopy(stored)

    async def update_event(self, event_id: str, day: Optional[date] = None,
                           start_min: Optional[int] = None,
                           end_min: Optional[int] = None) -> ScheduleEvent:
        """Move or resize an event; the result is pinned."""
        async with self._lock:
            current = self._events.get(event_id)
            if current is None:
                raise ValidationError(
                    ValidationReason.EVENT_NOT_FOUND, f"event {event_id!r} not found")
            updated = replace(
                current,
                day=day if day is not None else current.day,
                start_min=start_min if start_min is not None else current.start_min,
                end_min=end_min if end_min is not None else current.end_min,
                is_manual_override=True,
            )
            _check_times(updated.start_min, updated.end_min)
            updated.window_tag = self._tag_for(updated.day, updated.start_min, updated.end_min)
            stored = await self._execute(OptimisticCommand(
                kind="event",
                previous=current,
                new=updated,
                apply=functools.partial(self._set_event, event_id),
                confirm=functools.partial(self._store.save_event, updated),
            ))
            self._events[event_id] = stored
            log.info("event_updated", event_id=event_id, day=stored.day.isoformat(),
                     start_min=stored.start_min, end_min=stored.end_min)
            return copy.deepcopy(stored)

    async def remove_event(self, event_id: str) -> None:
        async with self._lock:
            current = self._events.get(event_id)
            if current is None:
                log.debug("event_remove_noop", event_id=event_id)
                return
            await self._execute(OptimisticCommand(
                kind="event",
                previous=current,
                new=None,
                apply=functools.partial(self._set_event, event_id),
                confirm=functools.partial(
                    self._store.delete_event, event_id, current.version),
            ))
            log.info("event_removed", event_id=event_id)

    # Tasks

    async def create_task(self, task: Task) -> Task:
        async with self._lock:
            if task.id in self._graph:
                raise ValueError(f"task {task.id!r} already exists")
            await self._execute(OptimisticCommand(
                kind="task",
                previous=None,
                new=task,
                apply=functools.partial(self._set_task, task.id),
                confirm=functools.partial(self._store.save_task, task),
            ))
            log.info("task_created", task_id=task.id)
            return copy.deepcopy(self._graph.get_task(task.id))

    async def update_task(self, task: Task) -> Task:
        """
        Replace a task's fields. The parent link is kept; move tasks with
        reparent_task so containment stays acyclic.
        """
        async with self._lock:
            current = self._graph.get_task(task.id)
            if current is None:
                raise ValidationError(
                    ValidationReason.TASK_NOT_FOUND, f"task {task.id!r} not found")
            updated = replace(task, parent_task_id=current.parent_task_id)
            await self._execute(OptimisticCommand(
                kind="task",
                previous=current,
                new=updated,
                apply=functools.partial(self._set_task, task.id),
                confirm=functools.partial(self._store.save_task, updated),
            ))
            log.info("task_updated", task_id=task.id)
            return copy.deepcopy(self._graph.get_task(task.id))

    async def reparent_task(self, task_id: str, new_parent_id: Optional[str]) -> ValidationResult:
        async with self._lock:
            previous = copy.deepcopy(self._graph.get_task(task_id))
            result = self._graph.reparent(task_id, new_parent_id)
            if not result.is_valid:
                log.info("reparent_rejected", task_id=task_id,
                         new_parent_id=new_parent_id, reason=result.reason.value)
                return result
            updated = self._graph.get_task(task_id)
            await self._execute(OptimisticCommand(
                kind="task",
                previous=previous,
                new=updated,
                apply=functools.partial(self._set_task, task_id),
                confirm=functools.partial(self._store.save_task, updated),
            ))
            return result

    async def complete_task(self, task_id: str) -> Task:
        """Mark a task DONE and take its scheduled events off the calendar."""
        async with self._lock:
            task = self._graph.get_task(task_id)
            if task is None:
                raise ValidationError(
                    ValidationReason.TASK_NOT_FOUND, f"task {task_id!r} not found")
            done = replace(task, status=TaskStatus.DONE)
            removed = [ev for ev in self._events.values()
                       if ev.source_task_id == task_id and ev.status == EventStatus.SCHEDULED]

            graph = self._graph.copy()
            graph.update_task(done)
            gone = {ev.id for ev in removed}
            events = {eid: ev for eid, ev in self._events.items() if eid not in gone}

            async def confirm():
                await self._store.save_task(done)
                for ev in removed:
                    await self._store.delete_event(ev.id, ev.version)

            await self._execute(OptimisticCommand(
                kind="task",
                previous=_SessionState(self._graph, self._events),
                new=_SessionState(graph, events),
                apply=self._install_state,
                confirm=confirm,
            ))
            log.info("task_completed", task_id=task_id, events_removed=len(removed))
            return copy.deepcopy(self._graph.get_task(task_id))

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task with its edges and events; unknown ids are a no-op."""
        async with self._lock:
            if task_id not in self._graph:
                log.debug("task_delete_noop", task_id=task_id)
                return False
            deps = [d for d in self._graph.dependencies
                    if task_id in (d.task_id, d.depends_on_task_id)]
            removed = [ev for ev in self._events.values() if ev.source_task_id == task_id]

            graph = self._graph.copy()
            graph.remove_task(task_id)
            orphans = [graph.get_task(child.id) for child in self._graph.children(task_id)]
            gone = {ev.id for ev in removed}
            events = {eid: ev for eid, ev in self._events.items() if eid not in gone}

            async def confirm():
                for dep in deps:
                    await self._store.delete_dependency(dep.id)
                for ev in removed:
                    await self._store.delete_event(ev.id, ev.version)
                for child in orphans:
                    await self._store.save_task(child)
                await self._store.delete_task(task_id)

            await self._execute(OptimisticCommand(
                kind="task",
                previous=_SessionState(self._graph, self._events),
                new=_SessionState(graph, events),
                apply=self._install_state,
                confirm=confirm,
            ))
            log.info("task_deleted", task_id=task_id, dependencies_removed=len(deps),
                     events_removed=len(removed))
            return True

    async def set_focus_blocks(self, blocks: Iterable[FocusTimeBlock]) -> None:
        async with self._lock:
            self._focus_blocks = copy.deepcopy(list(blocks))
            log.info("focus_blocks_set", blocks=len(self._focus_blocks))

    # Optimisation

    def cancel_optimization(self) -> bool:
        """Ask the in-flight run to stop; returns whether one was running."""
        if self._cancel is None:
            return False
        self._cancel.set()
        log.info("optimization_cancel_requested")
        return True

    async def run_optimization(self, config: OptimizationConfig) -> OptimizationResult:
        """
        Generate and commit a schedule. A run already in flight is cancelled.
        Cancelled runs commit nothing and raise OptimizationCancelled.
        """
        if self._cancel is not None:
            self._cancel.set()
            log.info("optimization_superseded")
        cancel = threading.Event()
        self._cancel = cancel
        try:
            async with self._lock:
                graph = self._graph.copy()
                events = copy.deepcopy(list(self._events.values()))
                blocks = copy.deepcopy(self._focus_blocks)

            loop = asyncio.get_running_loop()
            run = functools.partial(
                generate_schedule, graph, blocks, events, config, self._settings, cancel)
            try:
                result = await loop.run_in_executor(None, run)
            except asyncio.CancelledError:
                cancel.set()
                raise

            async with self._lock:
                if cancel.is_set():
                    raise OptimizationCancelled()
                return await self._commit(result, config, pinned_minutes(events))
        finally:
            if self._cancel is cancel:
                self._cancel = None

    async def _commit(self, result: OptimizationResult, config: OptimizationConfig,
                      planned_pins: Dict[str, int]) -> OptimizationResult:
        """
        Persist a finished run against the session as it is now. Tasks,
        edges and pins may have changed while the run was in flight: events
        of tasks that were deleted, completed or blocked meanwhile are
        discarded, and so are those of tasks whose pinned minutes changed,
        which are reported unscheduled if work remains.
        """
        pins = [ev for ev in self._events.values() if ev.is_pinned]
        pinned_now = pinned_minutes(pins)
        blocked = sorted(
            t.id for t in self._graph.tasks
            if not t.is_done and self._graph.is_blocked(t.id)
        )
        stale = set()
        fresh = []
        for ev in result.events:
            if ev.is_manual_override:
                continue
            task_id = ev.source_task_id
            task = self._graph.get_task(task_id)
            if task is None or task.is_done or task_id in blocked:
                continue
            if pinned_now.get(task_id, 0) != planned_pins.get(task_id, 0):
                if remaining_minutes(task, pinned_now) > 0:
                    stale.add(task_id)
                continue
            fresh.append(ev)
        merged = merge_with_pins(fresh, [ev for ev in pins if ev.day in config.date_range])

        generated = [ev for ev in merged.events if not ev.is_manual_override]
        placed = {ev.source_task_id for ev in generated}
        events = {
            eid: ev for eid, ev in self._events.items()
            if not (_is_generated(ev)
                    and (ev.day in config.date_range or ev.source_task_id in placed))
        }
        events.update({ev.id: ev for ev in generated})

        stored = await self._execute(OptimisticCommand(
            kind="schedule",
            previous=self._events,
            new=events,
            apply=self._install_events,
            confirm=functools.partial(
                self._store.replace_generated_events, config.date_range, generated),
        ))
        for ev in stored:
            self._events[ev.id] = ev

        final = sorted(
            (copy.deepcopy(self._events[ev.id]) for ev in merged.events),
            key=lambda e: (e.day, e.start_min, e.id),
        )
        candidates = set(result.unscheduled_task_ids) | set(merged.unscheduled_task_ids) | stale
        unscheduled = sorted(
            tid for tid in candidates
            if tid in self._graph and not self._graph.get_task(tid).is_done
            and tid not in blocked
        )
        log.info("schedule_committed", algorithm=config.algorithm_type.value,
                 events=len(final), unscheduled=len(unscheduled), blocked=len(blocked))
        return replace(
            result,
            events=final,
            unscheduled_task_ids=unscheduled,
            blocked_task_ids=blocked,
            total_utility=schedule_utility(final),
        )
