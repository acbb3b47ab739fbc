# taskplanner/availability.py
from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from .config import PlannerSettings
from .models import (
    Constraints,
    DateRange,
    FocusTimeBlock,
    ScheduleEvent,
    TimeWindow,
    WindowTag,
)

Interval = Tuple[int, int]


def _merge(intervals: Iterable[Interval]) -> List[Interval]:
    merged: List[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def _subtract(intervals: Iterable[Interval], cuts: Sequence[Interval]) -> List[Interval]:
    """Remove every cut from every interval; keeps non-empty pieces."""
    out = list(intervals)
    for cut_start, cut_end in cuts:
        pieces = []
        for start, end in out:
            if cut_end <= start or cut_start >= end:
                pieces.append((start, end))
                continue
            if start < cut_start:
                pieces.append((start, cut_start))
            if cut_end < end:
                pieces.append((cut_end, end))
        out = pieces
    return out


class AvailabilityModel:
    """
    Schedulable windows per day: default working hours plus enabled focus
    blocks, minus pinned events, bounded by the run's constraints.
    """

    def __init__(self, focus_blocks: Iterable[FocusTimeBlock] = (),
                 settings: Optional[PlannerSettings] = None):
        self.focus_blocks = list(focus_blocks)
        self.settings = settings or PlannerSettings()

    def available_slots(self, date_range: DateRange, constraints: Constraints,
                        pinned_events: Iterable[ScheduleEvent] = ()) -> List[TimeWindow]:
        pins_by_day: Dict[date, List[ScheduleEvent]] = defaultdict(list)
        for ev in pinned_events:
            if ev.is_pinned:
                pins_by_day[ev.day].append(ev)

        windows: List[TimeWindow] = []
        days = pd.date_range(date_range.start, date_range.end, freq="D", inclusive="left")
        for ts in days:
            if not constraints.allow_weekends and ts.weekday() >= 5:
                continue
            day = ts.date()
            windows.extend(self._day_windows(day, constraints, pins_by_day.get(day, [])))
        return windows

    def _day_windows(self, day: date, constraints: Constraints,
                     pins: List[ScheduleEvent]) -> List[TimeWindow]:
        slot = self.settings.slot_minutes
        floor = constraints.no_tasks_before_hour * 60

        reg_start = max(self.settings.work_start_hour * 60, floor)
        reg_end = min(self.settings.work_end_hour * 60,
                      reg_start + constraints.max_hours_per_day * 60)

        focus = _merge(
            (max(b.start_min, floor), b.end_min)
            for b in self.focus_blocks
            if b.is_enabled and b.day_of_week == day.weekday()
            and max(b.start_min, floor) < b.end_min
        )
        regular = _subtract([(reg_start, reg_end)] if reg_start < reg_end else [], focus)

        buffer = constraints.buffer_minutes
        cuts = [(ev.start_min - buffer, ev.end_min + buffer) for ev in pins]
        tagged = [(s, e, WindowTag.FOCUS) for s, e in _subtract(focus, cuts)]
        tagged += [(s, e, WindowTag.REGULAR) for s, e in _subtract(regular, cuts)]

        snapped = []
        for start, end, tag in tagged:
            start = -(-start // slot) * slot
            end = (end // slot) * slot
            if end > start:
                snapped.append([start, end, tag])

        pinned_min = sum(ev.duration_min for ev in pins)
        budget = max(0, constraints.max_hours_per_day * 60 - pinned_min) // slot * slot
        self._trim_to_budget(snapped, budget)

        return sorted(
            (TimeWindow(day, s, e, tag) for s, e, tag in snapped if e > s),
            key=lambda w: w.start_min,
        )

    @staticmethod
    def _trim_to_budget(windows: List[list], budget: int) -> None:
        excess = sum(e - s for s, e, _ in windows) - budget
        if excess <= 0:
            return
        # latest regular windows give way first, focus time last
        order = sorted(windows, key=lambda w: (w[2] == WindowTag.FOCUS, -w[0]))
        for w in order:
            if excess <= 0:
                break
            cut = min(excess, w[1] - w[0])
            w[1] -= cut
            excess -= cut


def windows_frame(windows: Sequence[TimeWindow]) -> pd.DataFrame:
    return pd.DataFrame(
        [{
            "day": w.day,
            "start_min": w.start_min,
            "end_min": w.end_min,
            "tag": w.tag.value,
            "capacity_min": w.capacity_min,
        } for w in windows],
        columns=["day", "start_min", "end_min", "tag", "capacity_min"],
    )
