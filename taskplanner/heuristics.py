# taskplanner/heuristics.py
import threading
from dataclasses import replace
from itertools import combinations
from typing import List, Optional

import structlog

from .models import ScheduleEvent, Task, TimeWindow
from .placement import (
    EPS,
    ScheduleOutcome,
    ScheduleRequest,
    accepts,
    candidate_windows,
    check_cancelled,
    finalize,
    raw_event,
    schedule_utility,
    slot_ceil,
)
from .utility import rank_key, score_placement

log = structlog.get_logger()


def _previous_pinned_task(window: TimeWindow, request: ScheduleRequest) -> Optional[Task]:
    before = [
        ev for ev in request.pinned_events
        if ev.day == window.day and ev.end_min <= window.start_min
    ]
    if not before:
        return None
    last = max(before, key=lambda ev: (ev.end_min, ev.id))
    return request.task_lookup.get(last.source_task_id)


def local_heuristic(request: ScheduleRequest,
                    cancel: Optional[threading.Event] = None) -> ScheduleOutcome:
    """
    Greedy placement.

    Tasks are ranked by their utility in the first open window they may use,
    then placed one by one into their candidate windows, consuming capacity
    and splitting across windows/days when one window is too small. A task
    that cannot be placed completely is left unscheduled.
    """
    check_cancelled(cancel)
    windows = request.windows
    slot = request.settings.slot_minutes
    buffer = request.constraints.buffer_minutes
    cursors = [w.start_min for w in windows]

    unscheduled: List[str] = []
    ranked = []
    for task in request.tasks:
        order = candidate_windows(task, windows, request.constraints)
        if not order:
            unscheduled.append(task.id)
            continue
        first = windows[order[0]]
        breakdown = score_placement(
            task, first, _previous_pinned_task(first, request),
            request.goals, request.reference_day,
        )
        ranked.append((rank_key(task, breakdown), task, order))
    ranked.sort(key=lambda item: item[0])

    placed: List[ScheduleEvent] = []
    for _, task, order in ranked:
        check_cancelled(cancel)
        needed = slot_ceil(task.duration_min, slot)
        free = sum(max(0, windows[i].end_min - cursors[i]) for i in order)
        if free < needed:
            unscheduled.append(task.id)
            continue

        remaining = needed
        for i in order:
            if remaining <= 0:
                break
            window = windows[i]
            available = window.end_min - cursors[i]
            if available <= 0:
                continue
            chunk = min(available, remaining)
            start = cursors[i]
            placed.append(raw_event(task, window.day, start, start + chunk, window.tag))
            cursors[i] = slot_ceil(start + chunk + buffer, slot)
            remaining -= chunk

    events = finalize(placed, request)
    log.debug(
        "greedy_completed",
        placed=len({ev.source_task_id for ev in events}),
        unscheduled=len(unscheduled),
    )
    return ScheduleOutcome(events=events, unscheduled_task_ids=sorted(unscheduled))


def _swap(events: List[ScheduleEvent], i: int, j: int,
          request: ScheduleRequest) -> Optional[List[ScheduleEvent]]:
    a, b = events[i], events[j]
    if a.source_task_id == b.source_task_id or a.duration_min != b.duration_min:
        return None
    task_a = request.task_lookup[a.source_task_id]
    task_b = request.task_lookup[b.source_task_id]
    window_a = TimeWindow(a.day, a.start_min, a.end_min, a.window_tag)
    window_b = TimeWindow(b.day, b.start_min, b.end_min, b.window_tag)
    if not (accepts(window_a, task_b, request.constraints)
            and accepts(window_b, task_a, request.constraints)):
        return None

    swapped = list(events)
    swapped[i] = replace(a, source_task_id=b.source_task_id)
    swapped[j] = replace(b, source_task_id=a.source_task_id)
    return finalize(swapped, request)


def hybrid(request: ScheduleRequest,
           cancel: Optional[threading.Event] = None) -> ScheduleOutcome:
    """
    Greedy seed refined by 2-opt swaps. Only strictly improving swaps are
    kept, so the result is never worse than the seed.
    """
    seed = local_heuristic(request, cancel)
    events = seed.events
    best = schedule_utility(events)
    budget = request.settings.hybrid_max_iterations

    iterations = 0
    accepted = 0
    improved = True
    while improved and iterations < budget:
        improved = False
        for i, j in combinations(range(len(events)), 2):
            iterations += 1
            if iterations > budget:
                break
            check_cancelled(cancel)
            candidate = _swap(events, i, j, request)
            if candidate is None:
                continue
            value = schedule_utility(candidate)
            if value > best + EPS:
                events, best = candidate, value
                accepted += 1
                improved = True
                break

    log.debug(
        "hybrid_completed",
        iterations=min(iterations, budget),
        swaps=accepted,
        seed_utility=round(schedule_utility(seed.events), 3),
        utility=round(best, 3),
    )
    return ScheduleOutcome(events=events, unscheduled_task_ids=seed.unscheduled_task_ids)
