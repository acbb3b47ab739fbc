# taskplanner/scheduler.py
import threading
from collections import defaultdict
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import pandas as pd
import structlog

from .availability import AvailabilityModel
from .config import PlannerSettings
from .graph import TaskGraph
from .heuristics import hybrid, local_heuristic
from .metrics import SCHEDULE_TIME, UNSCHEDULED_TASKS
from .models import (
    AlgorithmType,
    FocusTimeBlock,
    OptimizationConfig,
    OptimizationResult,
    ScheduleEvent,
    Task,
)
from .optimizer import milp_optimized
from .placement import ScheduleOutcome, ScheduleRequest, schedule_utility
from .reconcile import merge_with_pins

log = structlog.get_logger()

Strategy = Callable[[ScheduleRequest, Optional[threading.Event]], ScheduleOutcome]

STRATEGIES: Dict[AlgorithmType, Strategy] = {
    AlgorithmType.LOCAL_HEURISTIC: local_heuristic,
    AlgorithmType.MILP_OPTIMIZED: milp_optimized,
    AlgorithmType.HYBRID: hybrid,
}


def pinned_minutes(events: Iterable[ScheduleEvent]) -> Dict[str, int]:
    """Minutes of each task already placed by hand."""
    minutes: Dict[str, int] = defaultdict(int)
    for ev in events:
        if ev.is_pinned:
            minutes[ev.source_task_id] += ev.duration_min
    return dict(minutes)


def remaining_minutes(task: Task, pinned: Dict[str, int]) -> int:
    return max(0, task.duration_min - pinned.get(task.id, 0))


def eligible_tasks(graph: TaskGraph,
                   pinned: Dict[str, int]) -> Tuple[List[Task], List[str]]:
    """
    Split open tasks into decision tasks and blocked task ids.

    A task partly placed by hand is a decision task for the rest of its
    duration; one fully covered by pins is left alone.
    """
    eligible: List[Task] = []
    blocked: List[str] = []
    for task in sorted(graph.tasks, key=lambda t: t.id):
        if task.is_done:
            continue
        if graph.is_blocked(task.id):
            blocked.append(task.id)
            continue
        left = remaining_minutes(task, pinned)
        if left == task.duration_min:
            eligible.append(task)
        elif left > 0:
            eligible.append(replace(task, estimated_duration_hours=left / 60))
    return eligible, blocked


def generate_schedule(graph: TaskGraph,
                      focus_blocks: Iterable[FocusTimeBlock],
                      events: Iterable[ScheduleEvent],
                      config: OptimizationConfig,
                      settings: Optional[PlannerSettings] = None,
                      cancel: Optional[threading.Event] = None) -> OptimizationResult:
    """
    Build a schedule for ``config.date_range``.

    events: the current calendar; pinned (manually placed) events are kept
            as-is and their time is not available to the optimizer.
    cancel: set from another thread to abandon the run.
    """
    settings = settings or PlannerSettings()
    all_pins = [ev for ev in events if ev.is_pinned]
    pins_in_range = [ev for ev in all_pins if ev.day in config.date_range]

    # 1) Decide which tasks the optimizer may move
    tasks, blocked = eligible_tasks(graph, pinned_minutes(all_pins))
    pinned_parts: Dict[str, List[ScheduleEvent]] = defaultdict(list)
    for ev in all_pins:
        pinned_parts[ev.source_task_id].append(ev)

    # 2) Candidate windows
    windows = AvailabilityModel(focus_blocks, settings).available_slots(
        config.date_range, config.constraints, pins_in_range)

    request = ScheduleRequest(
        tasks=tasks,
        windows=windows,
        task_lookup={t.id: t for t in graph.tasks},
        pinned_events=pins_in_range,
        constraints=config.constraints,
        goals=config.goals,
        reference_day=config.today,
        settings=settings,
        pinned_parts=dict(pinned_parts),
    )

    # 3) Run the selected strategy
    strategy = STRATEGIES[config.algorithm_type]
    with SCHEDULE_TIME.labels(algorithm=config.algorithm_type.value).time():
        outcome = strategy(request, cancel)

    # 4) Pins win over anything the strategy produced
    merged = merge_with_pins(outcome.events, pins_in_range)
    unscheduled = sorted(set(outcome.unscheduled_task_ids) | set(merged.unscheduled_task_ids))

    UNSCHEDULED_TASKS.labels(algorithm=config.algorithm_type.value).inc(len(unscheduled))
    total = schedule_utility(merged.events)
    log.info(
        "schedule_generated",
        algorithm=config.algorithm_type.value,
        windows=len(windows),
        eligible=len(tasks),
        blocked=len(blocked),
        events=len(merged.events),
        unscheduled=len(unscheduled),
        total_utility=round(total, 3),
        used_fallback=outcome.used_fallback,
    )
    return OptimizationResult(
        events=merged.events,
        unscheduled_task_ids=unscheduled,
        algorithm_type=config.algorithm_type,
        blocked_task_ids=blocked,
        total_utility=total,
        used_fallback=outcome.used_fallback,
    )


def events_frame(events: Iterable[ScheduleEvent],
                 tasks: Optional[Dict[str, Task]] = None) -> pd.DataFrame:
    """Schedule as a dataframe, one row per event, chronological."""
    tasks = tasks or {}
    rows = []
    for ev in events:
        task = tasks.get(ev.source_task_id)
        rows.append({
            "id": ev.id,
            "task_id": ev.source_task_id,
            "label": task.title if task else ev.source_task_id,
            "day": ev.day,
            "start": f"{ev.start_min // 60:02d}:{ev.start_min % 60:02d}",
            "end": f"{ev.end_min // 60:02d}:{ev.end_min % 60:02d}",
            "part": f"{ev.task_part}/{ev.total_parts}",
            "utility": round(ev.utility, 2),
            "manual": ev.is_manual_override,
            "reason": ev.utility_breakdown.reason if ev.utility_breakdown else "",
        })
    columns = ["id", "task_id", "label", "day", "start", "end",
               "part", "utility", "manual", "reason"]
    df = pd.DataFrame(rows, columns=columns)
    if not df.empty:
        df = df.sort_values(["day", "start", "id"]).reset_index(drop=True)
    return df
