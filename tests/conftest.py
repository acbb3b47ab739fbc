"""Shared fixtures: a fixed Monday, task factory, settings and an in-memory service."""

from datetime import date, timedelta

import pytest

from taskplanner.config import PlannerSettings
from taskplanner.graph import TaskGraph
from taskplanner.models import DateRange, Task
from taskplanner.service import PlannerService
from taskplanner.store import InMemoryScheduleStore

MONDAY = date(2025, 11, 3)


@pytest.fixture
def monday() -> date:
    return MONDAY


@pytest.fixture
def one_day() -> DateRange:
    return DateRange(MONDAY, MONDAY + timedelta(days=1))


@pytest.fixture
def week() -> DateRange:
    return DateRange(MONDAY, MONDAY + timedelta(days=7))


@pytest.fixture
def settings() -> PlannerSettings:
    return PlannerSettings(milp_max_solve_seconds=10.0)


@pytest.fixture
def make_task():
    """Task factory with a readable default title."""

    def _make(task_id: str, **kwargs) -> Task:
        kwargs.setdefault("title", task_id.upper())
        return Task(id=task_id, **kwargs)

    return _make


@pytest.fixture
def store() -> InMemoryScheduleStore:
    return InMemoryScheduleStore()


@pytest.fixture
def service(store, settings, make_task) -> PlannerService:
    graph = TaskGraph([
        make_task("a", estimated_duration_hours=1.5),
        make_task("b", estimated_duration_hours=1),
        make_task("c", estimated_duration_hours=2),
    ])
    return PlannerService(store, settings, graph=graph)
