# taskplanner/placement.py
"""
Shared plumbing for the scheduling strategies: the request/outcome types,
window eligibility, and the rescoring pass that applies context-switch
penalties once the day's order is known.
"""
import threading
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Dict, List, Optional, Sequence, Set

from .config import PlannerSettings
from .errors import OptimizationCancelled
from .models import (
    Constraints,
    Goals,
    ScheduleEvent,
    Task,
    TimeWindow,
    WindowTag,
)
from .utility import score_placement

EPS = 1e-9


@dataclass
class ScheduleRequest:
    tasks: List[Task]                   # decision tasks, durations net of pinned minutes
    windows: List[TimeWindow]           # chronological
    task_lookup: Dict[str, Task]        # every known task, pinned ones included
    pinned_events: List[ScheduleEvent]  # in range only
    constraints: Constraints
    goals: Goals
    reference_day: date
    settings: PlannerSettings = field(default_factory=PlannerSettings)
    pinned_parts: Dict[str, List[ScheduleEvent]] = field(default_factory=dict)  # all pins by task


@dataclass
class ScheduleOutcome:
    events: List[ScheduleEvent]
    unscheduled_task_ids: List[str]
    used_fallback: bool = False


def check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OptimizationCancelled()


def slot_ceil(minutes: int, slot_minutes: int) -> int:
    return -(-minutes // slot_minutes) * slot_minutes


def accepts(window: TimeWindow, task: Task, constraints: Constraints) -> bool:
    """Focus windows are reserved for deep work while focus blocks are respected."""
    if window.is_focus and constraints.respect_focus_blocks:
        return task.is_deep_work
    return True


def candidate_windows(task: Task, windows: Sequence[TimeWindow],
                      constraints: Constraints) -> List[int]:
    """Window indices in the order a task should try them."""
    if task.is_deep_work:
        focus = [i for i, w in enumerate(windows) if w.is_focus]
        regular = [i for i, w in enumerate(windows) if not w.is_focus]
        return focus + regular
    return [i for i, w in enumerate(windows) if accepts(w, task, constraints)]


def raw_event(task: Task, day: date, start_min: int, end_min: int,
              tag: WindowTag) -> ScheduleEvent:
    return ScheduleEvent(
        id="",
        source_task_id=task.id,
        day=day,
        start_min=start_min,
        end_min=end_min,
        window_tag=tag,
    )


def rescore(events: Sequence[ScheduleEvent], request: ScheduleRequest) -> List[ScheduleEvent]:
    """
    Recompute utility for every non-pinned event with the task that
    precedes it on the same day, pinned neighbours included.
    """
    by_day: Dict[date, List[ScheduleEvent]] = defaultdict(list)
    for ev in list(events) + list(request.pinned_events):
        by_day[ev.day].append(ev)

    out: List[ScheduleEvent] = []
    for day in sorted(by_day):
        previous: Optional[Task] = None
        for ev in sorted(by_day[day], key=lambda e: (e.start_min, e.id)):
            task = request.task_lookup.get(ev.source_task_id)
            if not ev.is_manual_override and task is not None:
                window = TimeWindow(ev.day, ev.start_min, ev.end_min, ev.window_tag)
                breakdown = score_placement(
                    task, window, previous, request.goals, request.reference_day)
                out.append(replace(
                    ev,
                    utility=breakdown.total_utility,
                    utility_breakdown=breakdown,
                ))
            previous = task
    return out


def _part_ids(task_id: str, count: int, taken: Set[str]) -> List[str]:
    ids: List[str] = []
    n = 1
    while len(ids) < count:
        candidate = f"evt-{task_id}-{n}"
        if candidate not in taken:
            ids.append(candidate)
        n += 1
    return ids


def finalize(events: Sequence[ScheduleEvent], request: ScheduleRequest) -> List[ScheduleEvent]:
    """
    Merge touching parts of a task, number the parts, assign ids, rescore.

    Pinned parts of a task count first: generated parts continue their
    numbering and never reuse a pinned event's id.
    """
    by_task: Dict[str, List[ScheduleEvent]] = defaultdict(list)
    for ev in events:
        by_task[ev.source_task_id].append(ev)

    numbered: List[ScheduleEvent] = []
    for task_id in sorted(by_task):
        parts: List[ScheduleEvent] = []
        for ev in sorted(by_task[task_id], key=lambda e: (e.day, e.start_min)):
            last = parts[-1] if parts else None
            if (last is not None and last.day == ev.day
                    and last.end_min == ev.start_min and last.window_tag == ev.window_tag):
                parts[-1] = replace(last, end_min=ev.end_min)
            else:
                parts.append(ev)
        pins = request.pinned_parts.get(task_id, [])
        ids = _part_ids(task_id, len(parts), {ev.id for ev in pins})
        for n, (event_id, ev) in enumerate(zip(ids, parts), start=len(pins) + 1):
            numbered.append(replace(
                ev,
                id=event_id,
                task_part=n,
                total_parts=len(pins) + len(parts),
                is_manual_override=False,
            ))

    scored = rescore(numbered, request)
    return sorted(scored, key=lambda e: (e.day, e.start_min, e.id))


def schedule_utility(events: Sequence[ScheduleEvent]) -> float:
    """Utility of the optimised placements, weighted by hours placed."""
    return sum(
        ev.utility * ev.duration_min / 60.0
        for ev in events
        if not ev.is_manual_override
    )
