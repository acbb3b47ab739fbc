# taskplanner/dragdrop.py
"""
Calendar drag-and-drop gestures.

A gesture starts with one of the ``begin_*`` calls and ends with exactly one
of ``drop_on_calendar``, ``drop_outside`` or ``cancel``, after which the
coordinator is idle again. Only drops on the calendar change anything; they
go through PlannerService and therefore pin the resulting event.
"""
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional

import structlog

from .errors import PlannerError, ValidationError
from .metrics import DROP_OUTCOMES
from .models import MINUTES_PER_DAY, ScheduleEvent, ValidationReason
from .service import PlannerService

log = structlog.get_logger()


class DragState(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    DROPPED_ON_CALENDAR = "dropped_on_calendar"
    DROPPED_OUTSIDE = "dropped_outside"
    CANCELLED = "cancelled"


class DragKind(str, Enum):
    MOVE = "move"
    RESIZE = "resize"
    EXTERNAL = "external"   # task dragged in from the task list


@dataclass
class DropResult:
    state: DragState
    accepted: bool
    event: Optional[ScheduleEvent] = None
    reason: str = ""
    validation_reason: Optional[ValidationReason] = None


class DragDropCoordinator:
    def __init__(self, service: PlannerService, slot_minutes: Optional[int] = None):
        self._service = service
        self._slot = slot_minutes or service.settings.slot_minutes
        self._state = DragState.IDLE
        self._kind: Optional[DragKind] = None
        self._source_id: Optional[str] = None

    @property
    def state(self) -> DragState:
        return self._state

    @property
    def source_id(self) -> Optional[str]:
        return self._source_id

    def begin_move(self, event_id: str) -> None:
        self._begin(DragKind.MOVE, event_id)

    def begin_resize(self, event_id: str) -> None:
        self._begin(DragKind.RESIZE, event_id)

    def begin_external(self, task_id: str) -> None:
        self._begin(DragKind.EXTERNAL, task_id)

    def _begin(self, kind: DragKind, source_id: str) -> None:
        if self._state == DragState.DRAGGING:
            raise RuntimeError(
                f"drag of {self._source_id!r} already in progress; drop or cancel it first")
        self._state = DragState.DRAGGING
        self._kind = kind
        self._source_id = source_id
        log.debug("drag_started", kind=kind.value, source_id=source_id)

    def _reset(self) -> None:
        self._state = DragState.IDLE
        self._kind = None
        self._source_id = None

    def _snap(self, minutes: int, upper: int) -> int:
        snapped = int(round(minutes / self._slot)) * self._slot
        return max(0, min(snapped, upper))

    def _minutes_from(self, day: date, moment: datetime) -> int:
        return (moment.date() - day).days * MINUTES_PER_DAY + moment.hour * 60 + moment.minute

    async def drop_on_calendar(self, start: datetime,
                               end: Optional[datetime] = None) -> DropResult:
        if self._state != DragState.DRAGGING:
            raise RuntimeError("no drag gesture in progress")
        kind, source_id = self._kind, self._source_id
        day = start.date()
        start_min = self._snap(start.hour * 60 + start.minute, MINUTES_PER_DAY - self._slot)

        try:
            if kind == DragKind.EXTERNAL:
                result = await self._drop_task(source_id, day, start_min)
            else:
                result = await self._drop_event(kind, source_id, day, start_min, end)
        except PlannerError as exc:
            log.warning("drop_rejected", kind=kind.value, source_id=source_id, error=str(exc))
            result = DropResult(
                state=DragState.DROPPED_ON_CALENDAR,
                accepted=False,
                reason=str(exc),
                validation_reason=getattr(exc, "reason", None),
            )
        except Exception:
            DROP_OUTCOMES.labels(outcome="error").inc()
            log.exception("drop_failed", kind=kind.value, source_id=source_id)
            raise
        finally:
            self._reset()

        DROP_OUTCOMES.labels(outcome="accepted" if result.accepted else "rejected").inc()
        return result

    async def _drop_event(self, kind: DragKind, event_id: str, day: date,
                          start_min: int, end: Optional[datetime]) -> DropResult:
        event = self._service.get_event(event_id)
        if event is None:
            raise ValidationError(
                ValidationReason.EVENT_NOT_FOUND, f"event {event_id!r} not found")
        if kind == DragKind.RESIZE and end is not None:
            end_min = self._snap(self._minutes_from(day, end), MINUTES_PER_DAY)
        else:
            end_min = start_min + event.duration_min

        updated = await self._service.update_event(event_id, day, start_min, end_min)
        log.info("event_dropped", kind=kind.value, event_id=event_id,
                 day=day.isoformat(), start_min=start_min, end_min=end_min)
        return DropResult(DragState.DROPPED_ON_CALENDAR, True, updated)

    async def _drop_task(self, task_id: str, day: date, start_min: int) -> DropResult:
        graph = self._service.graph
        task = graph.get_task(task_id)
        if task is None:
            raise ValidationError(ValidationReason.TASK_NOT_FOUND, f"task {task_id!r} not found")

        reason, code = "", None
        if task.is_done:
            reason, code = f"{task.title} is already done", ValidationReason.TASK_DONE
        else:
            blockers = graph.blocked_by(task_id)
            if blockers:
                names = ", ".join(t.title for t in blockers)
                reason = f"{task.title} is blocked by: {names}"
                code = ValidationReason.BLOCKED_TASK
        if reason:
            log.info("drop_rejected", kind=DragKind.EXTERNAL.value, source_id=task_id,
                     error=reason)
            return DropResult(
                state=DragState.DROPPED_ON_CALENDAR,
                accepted=False,
                reason=reason,
                validation_reason=code,
            )

        event = await self._service.create_event(
            task_id, day, start_min, start_min + task.duration_min)
        log.info("task_dropped", task_id=task_id, event_id=event.id,
                 day=day.isoformat(), start_min=start_min)
        return DropResult(DragState.DROPPED_ON_CALENDAR, True, event)

    def drop_outside(self) -> DropResult:
        source_id = self._source_id
        self._reset()
        DROP_OUTCOMES.labels(outcome="outside").inc()
        log.debug("drag_dropped_outside", source_id=source_id)
        return DropResult(DragState.DROPPED_OUTSIDE, False)

    def cancel(self) -> DropResult:
        source_id = self._source_id
        self._reset()
        DROP_OUTCOMES.labels(outcome="cancelled").inc()
        log.debug("drag_cancelled", source_id=source_id)
        return DropResult(DragState.CANCELLED, False)
