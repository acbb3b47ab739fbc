# taskplanner/optimizer.py
import threading
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import structlog
from ortools.sat.python import cp_model

from .errors import InfeasibleScheduleError, OptimizationCancelled
from .heuristics import local_heuristic
from .models import Task, TimeWindow, WindowTag
from .placement import (
    EPS,
    ScheduleOutcome,
    ScheduleRequest,
    accepts,
    check_cancelled,
    finalize,
    raw_event,
    schedule_utility,
    slot_ceil,
)
from .utility import score_placement

log = structlog.get_logger()


def build_slot_grid(windows: List[TimeWindow], slot_minutes: int) -> pd.DataFrame:
    """One row per slot of every window, chronological."""
    rows = []
    for w_idx, w in enumerate(windows):
        for start in range(w.start_min, w.end_min, slot_minutes):
            rows.append({
                "window": w_idx,
                "day": w.day,
                "start_min": start,
                "tag": w.tag.value,
                "first_in_window": start == w.start_min,
            })
    return pd.DataFrame(
        rows, columns=["window", "day", "start_min", "tag", "first_in_window"])


def utility_matrix(request: ScheduleRequest, slots: pd.DataFrame) -> np.ndarray:
    """
    (task, slot) utility without the context-switch term, which depends on
    the final order and is applied when the solution is rescored.
    """
    per_window = np.array([
        [score_placement(t, w, None, request.goals, request.reference_day).total_utility
         for w in request.windows]
        for t in request.tasks
    ], dtype=float).reshape(len(request.tasks), len(request.windows))
    return per_window[:, slots["window"].to_numpy(dtype=int)]


def eligible_mask(request: ScheduleRequest, slots: pd.DataFrame) -> np.ndarray:
    per_window = np.array([
        [accepts(w, t, request.constraints) for w in request.windows]
        for t in request.tasks
    ], dtype=bool).reshape(len(request.tasks), len(request.windows))
    return per_window[:, slots["window"].to_numpy(dtype=int)]


def _watch_cancel(solver: cp_model.CpSolver, cancel: threading.Event,
                  done: threading.Event) -> None:
    while not done.is_set():
        if cancel.wait(0.05):
            solver.StopSearch()
            return


def milp_optimized(request: ScheduleRequest,
                   cancel: Optional[threading.Event] = None) -> ScheduleOutcome:
    """
    Run CP-SAT to place tasks into slots.

    Each task is placed completely or not at all, no slot holds two tasks,
    and tasks of different kinds keep the configured buffer. The objective
    maximises summed placement utility; among equal utilities fewer
    fragments and earlier slots win. The greedy schedule seeds the solver
    and is returned instead when the rescored solution does not beat it.
    """
    seed = local_heuristic(request, cancel)
    if not request.tasks or not request.windows:
        return seed

    slot_minutes = request.settings.slot_minutes
    slots = build_slot_grid(request.windows, slot_minutes)
    n_slots = len(slots)
    tasks: List[Task] = request.tasks
    util = utility_matrix(request, slots)
    eligible = eligible_mask(request, slots)

    model = cp_model.CpModel()
    x: Dict[Tuple[int, int], cp_model.IntVar] = {}  # (task_index, slot_index) -> Bool
    placed: List[cp_model.IntVar] = []
    cand_by_task: List[List[int]] = []

    for t_idx, task in enumerate(tasks):
        cand = [int(s) for s in np.flatnonzero(eligible[t_idx])]
        cand_by_task.append(cand)
        for s in cand:
            x[(t_idx, s)] = model.NewBoolVar(f"x_t{t_idx}_s{s}")
        placed.append(model.NewBoolVar(f"placed_t{t_idx}"))

    # Each task fully placed or not at all
    for t_idx, task in enumerate(tasks):
        dur_slots = slot_ceil(task.duration_min, slot_minutes) // slot_minutes
        cand = cand_by_task[t_idx]
        if len(cand) < dur_slots:
            model.Add(placed[t_idx] == 0)
        model.Add(sum(x[(t_idx, s)] for s in cand) == dur_slots * placed[t_idx])

    # No overlaps
    covers: Dict[int, List[cp_model.IntVar]] = {}
    for (t_idx, s), var in x.items():
        covers.setdefault(s, []).append(var)
    for s, vars_ in covers.items():
        if len(vars_) > 1:
            model.Add(sum(vars_) <= 1)

    window_of = slots["window"].to_numpy(dtype=int)
    first_in_window = slots["first_in_window"].to_numpy(dtype=bool)

    # Buffer between different tasks inside a window
    buffer_slots = slot_ceil(request.constraints.buffer_minutes, slot_minutes) // slot_minutes
    if buffer_slots > 0:
        for s in range(n_slots):
            for k in range(1, buffer_slots + 1):
                s2 = s + k
                if s2 >= n_slots or window_of[s2] != window_of[s]:
                    break
                for t1 in range(len(tasks)):
                    if (t1, s) not in x:
                        continue
                    for t2 in range(len(tasks)):
                        if t2 != t1 and (t2, s2) in x:
                            model.AddBoolOr([x[(t1, s)].Not(), x[(t2, s2)].Not()])

    # Part starts, penalised to keep tasks in one piece where possible
    starts: List[cp_model.IntVar] = []
    for (t_idx, s), var in x.items():
        b = model.NewBoolVar(f"start_t{t_idx}_s{s}")
        prev = x.get((t_idx, s - 1)) if not first_in_window[s] else None
        if prev is None:
            model.Add(b >= var)
        else:
            model.Add(b >= var - prev)
        starts.append(b)

    # Objective: utility first, then fewer fragments, then earlier slots
    fragment_weight = n_slots * n_slots
    scale = n_slots * fragment_weight + fragment_weight + 1
    objective_terms = []
    for (t_idx, s), var in x.items():
        gain = int(round(util[t_idx, s] * slot_minutes / 60.0 * 100))
        objective_terms.append((gain * scale - s) * var)
    objective_terms.extend(-fragment_weight * b for b in starts)
    model.Maximize(sum(objective_terms))

    # Warm start from the greedy schedule
    index_of = {task.id: t_idx for t_idx, task in enumerate(tasks)}
    slot_index = {
        (row.day, row.start_min): i for i, row in enumerate(slots.itertuples(index=False))
    }
    seeded = set()
    for ev in seed.events:
        t_idx = index_of[ev.source_task_id]
        for start in range(ev.start_min, ev.end_min, slot_minutes):
            s = slot_index.get((ev.day, start))
            if s is not None and (t_idx, s) in x:
                seeded.add((t_idx, s))
    for key, var in x.items():
        model.AddHint(var, 1 if key in seeded else 0)
    seeded_tasks = {t_idx for t_idx, _ in seeded}
    for t_idx, var in enumerate(placed):
        model.AddHint(var, 1 if t_idx in seeded_tasks else 0)

    solver = cp_model.CpSolver()
    solver.parameters.max_time_in_seconds = request.settings.milp_max_solve_seconds
    solver.parameters.num_workers = 1

    check_cancelled(cancel)
    done = threading.Event()
    watcher = None
    if cancel is not None:
        watcher = threading.Thread(
            target=_watch_cancel, args=(solver, cancel, done), daemon=True)
        watcher.start()
    try:
        status = solver.Solve(model)
    finally:
        done.set()
        if watcher is not None:
            watcher.join()

    if cancel is not None and cancel.is_set():
        raise OptimizationCancelled("optimization cancelled during solve")
    if status in (cp_model.INFEASIBLE, cp_model.MODEL_INVALID):
        raise InfeasibleScheduleError(solver.StatusName(status))
    if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        log.warning("milp_no_solution", status=solver.StatusName(status))
        return ScheduleOutcome(seed.events, seed.unscheduled_task_ids, used_fallback=True)

    # Extract schedule
    raw = []
    unscheduled = []
    for t_idx, task in enumerate(tasks):
        if solver.Value(placed[t_idx]) != 1:
            unscheduled.append(task.id)
            continue
        for s in cand_by_task[t_idx]:
            if solver.Value(x[(t_idx, s)]) == 1:
                row = slots.iloc[s]
                raw.append(raw_event(
                    task, row["day"], int(row["start_min"]),
                    int(row["start_min"]) + slot_minutes, WindowTag(row["tag"]),
                ))
    events = finalize(raw, request)

    solved_utility = schedule_utility(events)
    seed_utility = schedule_utility(seed.events)
    log.debug(
        "milp_completed",
        status=solver.StatusName(status),
        utility=round(solved_utility, 3),
        seed_utility=round(seed_utility, 3),
    )
    fewer_placed = len(unscheduled) > len(seed.unscheduled_task_ids)
    if solved_utility + EPS < seed_utility or (
            abs(solved_utility - seed_utility) <= EPS and fewer_placed):
        return ScheduleOutcome(seed.events, seed.unscheduled_task_ids, used_fallback=True)
    return ScheduleOutcome(events=events, unscheduled_task_ids=sorted(unscheduled))
