"""DragDropCoordinator gesture handling."""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from taskplanner.dragdrop import DragDropCoordinator, DragState
from taskplanner.errors import ConcurrencyConflictError
from taskplanner.models import OptimizationConfig, ValidationReason


def drops(outcome: str) -> float:
    return REGISTRY.get_sample_value("schedule_drop_total", {"outcome": outcome}) or 0.0


@pytest.fixture
def coordinator(service) -> DragDropCoordinator:
    return DragDropCoordinator(service)


class TestExternalDrop:
    @pytest.mark.asyncio
    async def test_creates_one_pinned_event_of_task_duration(self, coordinator, service, store):
        accepted_before = drops("accepted")
        coordinator.begin_external("a")

        result = await coordinator.drop_on_calendar(datetime(2025, 11, 3, 10, 7))

        assert result.accepted
        assert result.state == DragState.DROPPED_ON_CALENDAR
        event = result.event
        assert (event.start_min, event.end_min) == (600, 690)
        assert event.is_manual_override
        assert service.get_schedule() == [event]
        assert await store.list_events() == [event]
        assert coordinator.state == DragState.IDLE
        assert drops("accepted") == accepted_before + 1

    @pytest.mark.asyncio
    async def test_blocked_task_rejected_with_blockers_named(self, coordinator, service):
        await service.add_dependency("b", "a")
        coordinator.begin_external("b")

        result = await coordinator.drop_on_calendar(datetime(2025, 11, 3, 10, 0))

        assert not result.accepted
        assert result.validation_reason == ValidationReason.BLOCKED_TASK
        assert "blocked by: A" in result.reason
        assert service.get_schedule() == []
        assert coordinator.state == DragState.IDLE

    @pytest.mark.asyncio
    async def test_done_task_rejected(self, coordinator, service):
        await service.complete_task("a")
        coordinator.begin_external("a")
        result = await coordinator.drop_on_calendar(datetime(2025, 11, 3, 10, 0))
        assert not result.accepted
        assert "already done" in result.reason
        assert result.validation_reason == ValidationReason.TASK_DONE
        assert service.get_schedule() == []

    @pytest.mark.asyncio
    async def test_unknown_task_reported(self, coordinator):
        coordinator.begin_external("ghost")
        result = await coordinator.drop_on_calendar(datetime(2025, 11, 3, 10, 0))
        assert not result.accepted
        assert result.validation_reason == ValidationReason.TASK_NOT_FOUND


class TestMoveAndResize:
    @pytest.mark.asyncio
    async def test_move_keeps_duration(self, coordinator, service, monday):
        event = await service.create_event("a", monday, 540, 630)
        coordinator.begin_move(event.id)

        result = await coordinator.drop_on_calendar(
            datetime(2025, 11, 4, 14, 0), datetime(2025, 11, 4, 14, 30))

        moved = service.get_event(event.id)
        assert result.accepted
        assert moved.day == datetime(2025, 11, 4).date()
        assert (moved.start_min, moved.end_min) == (840, 930)

    @pytest.mark.asyncio
    async def test_moving_generated_event_pins_it(self, coordinator, service, one_day):
        await service.run_optimization(OptimizationConfig(one_day))
        target = next(ev for ev in service.get_schedule() if ev.source_task_id == "b")
        coordinator.begin_move(target.id)

        result = await coordinator.drop_on_calendar(datetime(2025, 11, 3, 15, 0))

        assert result.event.is_manual_override
        assert (result.event.start_min, result.event.end_min) == (900, 960)

    @pytest.mark.asyncio
    async def test_resize_uses_dropped_end(self, coordinator, service, monday):
        event = await service.create_event("a", monday, 540, 630)
        coordinator.begin_resize(event.id)
        await coordinator.drop_on_calendar(
            datetime(2025, 11, 3, 9, 0), datetime(2025, 11, 3, 11, 0))
        assert service.get_event(event.id).end_min == 660

    @pytest.mark.asyncio
    async def test_resize_to_nothing_rejected(self, coordinator, service, monday):
        event = await service.create_event("a", monday, 540, 630)
        coordinator.begin_resize(event.id)
        result = await coordinator.drop_on_calendar(
            datetime(2025, 11, 3, 9, 0), datetime(2025, 11, 3, 9, 0))
        assert not result.accepted
        assert result.validation_reason == ValidationReason.INVALID_TIME
        assert service.get_event(event.id) == event

    @pytest.mark.asyncio
    async def test_store_conflict_reported_as_rejection(self, coordinator, service, store, monday):
        event = await service.create_event("a", monday, 540, 630)
        store.save_event = AsyncMock(side_effect=ConcurrencyConflictError(event.id))
        coordinator.begin_move(event.id)

        result = await coordinator.drop_on_calendar(datetime(2025, 11, 3, 13, 0))

        assert not result.accepted
        assert event.id in result.reason
        assert service.get_event(event.id) == event

    @pytest.mark.asyncio
    async def test_unexpected_store_failure_propagates(self, coordinator, service, store, monday):
        event = await service.create_event("a", monday, 540, 630)
        store.save_event = AsyncMock(side_effect=RuntimeError("disk full"))
        coordinator.begin_move(event.id)

        with pytest.raises(RuntimeError):
            await coordinator.drop_on_calendar(datetime(2025, 11, 3, 13, 0))

        assert coordinator.state == DragState.IDLE
        assert service.get_event(event.id) == event


class TestGestureLifecycle:
    def test_second_begin_rejected(self, coordinator):
        coordinator.begin_move("evt-a-1")
        with pytest.raises(RuntimeError):
            coordinator.begin_external("b")
        assert coordinator.source_id == "evt-a-1"

    @pytest.mark.asyncio
    async def test_drop_without_gesture(self, coordinator):
        with pytest.raises(RuntimeError):
            await coordinator.drop_on_calendar(datetime(2025, 11, 3, 10, 0))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("finish, state", [
        ("drop_outside", DragState.DROPPED_OUTSIDE),
        ("cancel", DragState.CANCELLED),
    ])
    async def test_gesture_without_drop_changes_nothing(self, coordinator, service, monday,
                                                        finish, state):
        event = await service.create_event("a", monday, 540, 630)
        coordinator.begin_move(event.id)

        result = getattr(coordinator, finish)()

        assert result.state == state
        assert not result.accepted
        assert coordinator.state == DragState.IDLE
        assert coordinator.source_id is None
        assert service.get_schedule() == [event]
