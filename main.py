# demo.py
import asyncio
from datetime import date, timedelta

import matplotlib.pyplot as plt
import pandas as pd

from taskplanner.logging_config import setup_logging
from taskplanner.models import (
    AlgorithmType,
    DateRange,
    FocusTimeBlock,
    OptimizationConfig,
    Priority,
    Task,
)
from taskplanner.scheduler import events_frame
from taskplanner.service import PlannerService
from taskplanner.store import InMemoryScheduleStore


async def run_demo():
    service = PlannerService(InMemoryScheduleStore())

    # Week of Mon 2025-11-03
    week = DateRange(date(2025, 11, 3), date(2025, 11, 10))

    await service.set_focus_blocks([
        FocusTimeBlock(id="fb-mon", day_of_week=0, start_min=9 * 60, end_min=11 * 60),
        FocusTimeBlock(id="fb-wed", day_of_week=2, start_min=9 * 60, end_min=12 * 60),
    ])

    tasks = [
        Task(id="design", title="Write design doc", priority=Priority.HIGH,
             estimated_duration_hours=3, is_deep_work=True,
             deadline=date(2025, 11, 5), category="project"),
        Task(id="impl", title="Implement parser", priority=Priority.HIGH,
             estimated_duration_hours=4, is_deep_work=True, category="project"),
        Task(id="review", title="Code review", priority=Priority.MEDIUM,
             estimated_duration_hours=1, category="project"),
        Task(id="mail", title="Inbox zero", priority=Priority.LOW,
             estimated_duration_hours=0.5, category="admin"),
        Task(id="study", title="Study: OS", priority=Priority.MEDIUM,
             estimated_duration_hours=2, deadline=date(2025, 11, 8), tags={"school"}),
        Task(id="gym", title="Gym", priority=Priority.LOW,
             estimated_duration_hours=1, tags={"health"}),
    ]
    for task in tasks:
        await service.create_task(task)

    await service.add_dependency("impl", "design")
    await service.add_dependency("review", "impl")
    rejected = await service.add_dependency("design", "review")
    print("design -> review:", rejected.errors)

    # One event placed by hand before optimising
    await service.create_event("gym", date(2025, 11, 4), 12 * 60, 13 * 60)

    totals = {}
    frames = {}
    for algorithm in AlgorithmType:
        result = await service.run_optimization(
            OptimizationConfig(date_range=week, algorithm_type=algorithm))
        totals[algorithm.value] = result.total_utility
        frames[algorithm.value] = events_frame(
            result.events, {t.id: t for t in service.graph.tasks})
        print(f"=== {algorithm.value} (utility {result.total_utility:.1f}) ===")
        print(frames[algorithm.value])
        print("unscheduled:", result.unscheduled_task_ids, "blocked:", result.blocked_task_ids)

    await service.complete_task("design")
    result = await service.run_optimization(
        OptimizationConfig(date_range=week, algorithm_type=AlgorithmType.HYBRID))
    print("=== after completing the design doc ===")
    print(events_frame(result.events, {t.id: t for t in service.graph.tasks}))
    return totals, frames


def main():
    setup_logging()
    totals, frames = asyncio.run(run_demo())

    # Plot utility per algorithm and per placed event
    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 3))
    ax1.bar(list(totals), list(totals.values()))
    ax1.set_title("Schedule Utility by Algorithm")
    ax1.set_ylabel("Utility")

    hybrid = frames[AlgorithmType.HYBRID.value]
    hybrid = hybrid[~hybrid["manual"]]
    when = pd.to_datetime(hybrid["day"].astype(str) + " " + hybrid["start"])
    ax2.plot(when, hybrid["utility"], marker="o")
    ax2.set_title("Hybrid Placement Utility")
    ax2.set_xlabel("Time")
    ax2.set_ylabel("Utility")
    plt.tight_layout()
    plt.show()


if __name__ == "__main__":
    main()
