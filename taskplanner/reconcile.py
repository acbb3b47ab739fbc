# taskplanner/reconcile.py
from dataclasses import dataclass
from typing import Iterable, List

import structlog

from .models import ScheduleEvent

log = structlog.get_logger()


@dataclass
class MergeResult:
    events: List[ScheduleEvent]
    dropped_events: List[ScheduleEvent]
    unscheduled_task_ids: List[str]


def merge_with_pins(new_events: Iterable[ScheduleEvent],
                    pinned_events: Iterable[ScheduleEvent]) -> MergeResult:
    """
    Combine a fresh scheduler run with the user's pinned events.

    Pins always survive. A computed event that overlaps a pin is dropped
    together with the other parts of its task, and the task is reported as
    unscheduled for this run instead of double-booking the calendar.
    """
    pins = [ev for ev in pinned_events if ev.is_pinned]
    candidates = [ev for ev in new_events if not ev.is_manual_override]

    clashing = {
        ev.source_task_id
        for ev in candidates
        if any(ev.overlaps(pin) for pin in pins)
    }
    kept = [ev for ev in candidates if ev.source_task_id not in clashing]
    dropped = [ev for ev in candidates if ev.source_task_id in clashing]

    if dropped:
        log.warning(
            "scheduled_events_dropped_for_pins",
            task_ids=sorted(clashing),
            dropped=len(dropped),
        )

    events = sorted(pins + kept, key=lambda e: (e.day, e.start_min, e.id))
    return MergeResult(
        events=events,
        dropped_events=dropped,
        unscheduled_task_ids=sorted(clashing),
    )
