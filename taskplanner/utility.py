# taskplanner/utility.py
"""
Placement utility.

score_placement() is a pure function of the task, the candidate window and
the task scheduled just before it on the same day. Every term is scaled by
the run's Goals multipliers.
"""
from datetime import date, datetime
from typing import Optional, Tuple

from .models import Goals, Priority, Task, TimeWindow, UtilityBreakdown, as_date

PRIORITY_WEIGHTS = {
    Priority.LOW: 10.0,
    Priority.MEDIUM: 30.0,
    Priority.HIGH: 60.0,
    Priority.URGENT: 90.0,
}

MAX_DEADLINE_SCORE = 50.0
DEADLINE_HORIZON_DAYS = 14      # deadlines this far out score 0
FOCUS_TIME_BONUS = 25.0
CONTEXT_SWITCH_PENALTY = -15.0

DEFAULT_GOALS = Goals()


def priority_score(task: Task, goals: Goals = DEFAULT_GOALS) -> float:
    return PRIORITY_WEIGHTS[task.priority] * goals.priority


def deadline_score(task: Task, reference_day: date, goals: Goals = DEFAULT_GOALS) -> float:
    """Saturates at the maximum for overdue/same-day tasks, 0 past the horizon."""
    if task.deadline is None:
        return 0.0
    days_left = (as_date(task.deadline) - reference_day).days
    if days_left <= 0:
        base = MAX_DEADLINE_SCORE
    elif days_left >= DEADLINE_HORIZON_DAYS:
        base = 0.0
    else:
        base = MAX_DEADLINE_SCORE / (1 + days_left)
    return base * goals.deadline


def is_context_switch(previous: Optional[Task], task: Task) -> bool:
    if previous is None or previous.id == task.id:
        return False
    if previous.is_deep_work != task.is_deep_work:
        return True
    if previous.category and task.category and previous.category != task.category:
        return True
    if previous.tags and task.tags and not (previous.tags & task.tags):
        return True
    return False


def _reason(task: Task, prio: float, ddl: float, focus: float, switch: float,
            days_left: Optional[int], previous: Optional[Task]) -> str:
    terms = []
    if prio:
        terms.append((prio, f"{task.priority.value.lower()} priority"))
    if ddl:
        if days_left is not None and days_left < 0:
            label = "overdue"
        elif days_left == 0:
            label = "due today"
        else:
            label = f"due in {days_left}d"
        terms.append((ddl, label))
    if focus:
        terms.append((focus, "focus-time match"))
    if switch:
        terms.append((abs(switch), f"context switch after '{previous.title}'"))
    if not terms:
        return "No strong preference"
    terms.sort(key=lambda t: -t[0])
    text = ", ".join(label for _, label in terms[:2])
    return text[0].upper() + text[1:]


def score_placement(task: Task, window: TimeWindow,
                    previous_task: Optional[Task] = None,
                    goals: Goals = DEFAULT_GOALS,
                    reference_day: Optional[date] = None) -> UtilityBreakdown:
    """
    Utility of placing ``task`` in ``window``.

    reference_day is "today" for deadline urgency; it defaults to the
    window's day.
    """
    ref = reference_day or window.day
    prio = priority_score(task, goals)
    ddl = deadline_score(task, ref, goals)
    focus = FOCUS_TIME_BONUS * goals.focus_time if task.is_deep_work and window.is_focus else 0.0
    switch = (
        CONTEXT_SWITCH_PENALTY * goals.context_switch
        if is_context_switch(previous_task, task) else 0.0
    )
    days_left = (as_date(task.deadline) - ref).days if task.deadline is not None else None
    return UtilityBreakdown(
        priority_score=prio,
        deadline_score=ddl,
        focus_time_bonus=focus,
        context_switch_penalty=switch,
        reason=_reason(task, prio, ddl, focus, switch, days_left, previous_task),
    )


def rank_key(task: Task, breakdown: UtilityBreakdown) -> Tuple[float, datetime, str]:
    """Sort key: utility desc, then deadline asc (none last), then task id."""
    if task.deadline is None:
        deadline = datetime.max
    elif isinstance(task.deadline, datetime):
        deadline = task.deadline
    else:
        deadline = datetime.combine(task.deadline, datetime.min.time())
    return (-breakdown.total_utility, deadline, task.id)
