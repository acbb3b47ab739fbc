"""PlannerService: optimistic updates, conflicts, optimisation runs and cancellation."""

import asyncio
import threading
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from taskplanner.errors import ConcurrencyConflictError, OptimizationCancelled, ValidationError
from taskplanner.graph import TaskGraph
from taskplanner.models import (
    AlgorithmType,
    OptimizationConfig,
    OptimizationResult,
    ScheduleEvent,
    TaskStatus,
    ValidationReason,
)
from taskplanner.service import PlannerService


def generated(task_id, day, start_min, end_min):
    return ScheduleEvent(
        id=f"evt-{task_id}-1",
        source_task_id=task_id,
        day=day,
        start_min=start_min,
        end_min=end_min,
    )


async def wait_for(flag: threading.Event) -> None:
    await asyncio.get_running_loop().run_in_executor(None, flag.wait, 5)


class TestDependencies:
    @pytest.mark.asyncio
    async def test_accepted_edge_is_persisted(self, service, store):
        result = await service.add_dependency("b", "a")
        assert result.is_valid
        assert [d.id for d in await store.list_dependencies()] == [result.dependency.id]
        assert service.graph.is_blocked("b")

    @pytest.mark.asyncio
    async def test_cycle_rejected_without_store_write(self, service, store):
        await service.add_dependency("b", "a")
        result = await service.add_dependency("a", "b")
        assert result.would_create_cycle
        assert len(await store.list_dependencies()) == 1
        assert len(service.graph.dependencies) == 1

    @pytest.mark.asyncio
    async def test_store_failure_rolls_back_edge(self, service, store):
        store.save_dependency = AsyncMock(side_effect=RuntimeError("store unavailable"))
        with pytest.raises(RuntimeError):
            await service.add_dependency("b", "a")
        assert service.graph.dependencies == []
        assert not service.graph.is_blocked("b")

    @pytest.mark.asyncio
    async def test_remove_missing_dependency_is_noop(self, service):
        assert await service.remove_dependency("dep-404") is False

    @pytest.mark.asyncio
    async def test_remove_dependency(self, service, store):
        dep = (await service.add_dependency("b", "a")).dependency
        assert await service.remove_dependency(dep.id) is True
        assert await store.list_dependencies() == []
        assert not service.graph.is_blocked("b")

    @pytest.mark.asyncio
    async def test_failed_remove_restores_edge(self, service, store):
        dep = (await service.add_dependency("b", "a")).dependency
        store.delete_dependency = AsyncMock(side_effect=RuntimeError("store unavailable"))
        with pytest.raises(RuntimeError):
            await service.remove_dependency(dep.id)
        assert service.graph.get_dependency(dep.id) == dep


class TestEvents:
    @pytest.mark.asyncio
    async def test_create_event_is_pinned_and_stored(self, service, store, monday):
        event = await service.create_event("a", monday, 540, 630)
        assert event.is_manual_override
        assert event.version == 1
        assert await store.list_events() == [event]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("start_min, end_min", [(600, 600), (700, 600), (-30, 60), (1400, 1470)])
    async def test_invalid_times_rejected(self, service, monday, start_min, end_min):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_event("a", monday, start_min, end_min)
        assert exc_info.value.reason == ValidationReason.INVALID_TIME
        assert service.get_schedule() == []

    @pytest.mark.asyncio
    async def test_unknown_ids(self, service, monday):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_event("nope", monday, 540, 600)
        assert exc_info.value.reason == ValidationReason.TASK_NOT_FOUND
        with pytest.raises(ValidationError) as exc_info:
            await service.update_event("evt-nope", start_min=540)
        assert exc_info.value.reason == ValidationReason.EVENT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_update_rollback_restores_exact_previous(self, service, store, monday):
        event = await service.create_event("a", monday, 540, 630)
        before = service.get_event(event.id)
        store.save_event = AsyncMock(side_effect=RuntimeError("store unavailable"))

        with pytest.raises(RuntimeError):
            await service.update_event(event.id, start_min=700, end_min=790)

        assert service.get_event(event.id) == before

    @pytest.mark.asyncio
    async def test_conflict_triggers_refetch(self, service, store, monday):
        event = await service.create_event("a", monday, 540, 630)
        # another client moves the same event
        stored = (await store.list_events())[0]
        await store.save_event(replace(stored, start_min=600, end_min=690))
        store.list_events = AsyncMock(wraps=store.list_events)

        with pytest.raises(ConcurrencyConflictError):
            await service.update_event(event.id, start_min=660, end_min=750)

        store.list_events.assert_awaited()
        current = service.get_event(event.id)
        assert (current.start_min, current.end_min, current.version) == (600, 690, 2)

    @pytest.mark.asyncio
    async def test_concurrent_delete_detected(self, service, store, monday):
        event = await service.create_event("a", monday, 540, 630)
        await store.delete_event(event.id)
        with pytest.raises(ConcurrencyConflictError):
            await service.update_event(event.id, start_min=600, end_min=690)
        assert service.get_event(event.id) is None

    @pytest.mark.asyncio
    async def test_update_pins_generated_event(self, service, one_day):
        await service.run_optimization(OptimizationConfig(one_day))
        target = next(ev for ev in service.get_schedule() if ev.source_task_id == "b")
        assert not target.is_manual_override
        moved = await service.update_event(target.id, start_min=900, end_min=960)
        assert moved.is_manual_override
        assert moved.version == target.version + 1

    @pytest.mark.asyncio
    async def test_remove_event(self, service, store, monday):
        event = await service.create_event("a", monday, 540, 630)
        await service.remove_event(event.id)
        await service.remove_event(event.id)
        assert service.get_schedule() == []
        assert await store.list_events() == []


class TestTasks:
    @pytest.mark.asyncio
    async def test_create_and_update_task(self, service, store, make_task):
        await service.create_task(make_task("d", estimated_duration_hours=3))
        await service.update_task(make_task("d", title="Renamed", parent_task_id="a"))
        task = service.graph.get_task("d")
        assert task.title == "Renamed"
        assert task.parent_task_id is None
        assert [t.title for t in await store.list_tasks()] == ["Renamed"]

    @pytest.mark.asyncio
    async def test_complete_task_clears_events_and_unblocks(self, service, store, one_day):
        await service.add_dependency("c", "a")
        first = await service.run_optimization(OptimizationConfig(one_day))
        assert first.blocked_task_ids == ["c"]

        done = await service.complete_task("a")

        assert done.status == TaskStatus.DONE
        assert all(ev.source_task_id != "a" for ev in service.get_schedule())
        assert all(ev.source_task_id != "a" for ev in await store.list_events())
        second = await service.run_optimization(OptimizationConfig(one_day))
        assert "c" in {ev.source_task_id for ev in second.events}

    @pytest.mark.asyncio
    async def test_complete_task_rollback(self, service, store, one_day):
        await service.run_optimization(OptimizationConfig(one_day))
        before = service.get_schedule()
        store.save_task = AsyncMock(side_effect=RuntimeError("store unavailable"))
        with pytest.raises(RuntimeError):
            await service.complete_task("a")
        assert service.graph.get_task("a").status == TaskStatus.TODO
        assert service.get_schedule() == before

    @pytest.mark.asyncio
    async def test_delete_task_removes_edges_and_events(self, service, store, monday, make_task):
        await service.create_task(make_task("a1", parent_task_id="a"))
        dep = (await service.add_dependency("c", "a")).dependency
        await service.create_event("a", monday, 540, 630)

        assert await service.delete_task("a") is True

        assert "a" not in service.graph
        assert service.graph.get_dependency(dep.id) is None
        assert service.graph.get_task("a1").parent_task_id is None
        assert service.get_schedule() == []
        assert await store.list_dependencies() == []
        assert await store.list_events() == []
        assert await service.delete_task("a") is False

    @pytest.mark.asyncio
    async def test_reparent_rejects_containment_cycle(self, service):
        assert (await service.reparent_task("b", "a")).is_valid
        result = await service.reparent_task("a", "b")
        assert result.reason == ValidationReason.CONTAINMENT_CYCLE
        assert service.graph.get_task("a").parent_task_id is None


class TestOptimization:
    @pytest.mark.asyncio
    async def test_run_persists_and_keeps_pins(self, service, store, one_day, monday):
        pin = await service.create_event("a", monday, 540, 630)

        result = await service.run_optimization(
            OptimizationConfig(one_day, AlgorithmType.LOCAL_HEURISTIC))

        assert pin in result.events
        assert {ev.source_task_id for ev in result.events} == {"a", "b", "c"}
        assert [ev for ev in result.events if ev.source_task_id == "a"] == [pin]
        assert await store.list_events() == service.get_schedule()

    @pytest.mark.asyncio
    async def test_rerun_replaces_generated_events(self, service, store, one_day):
        first = await service.run_optimization(OptimizationConfig(one_day))
        second = await service.run_optimization(
            OptimizationConfig(one_day, AlgorithmType.HYBRID))
        assert len(service.get_schedule()) == len(second.events) == len(first.events)
        assert len(await store.list_events()) == len(second.events)

    @pytest.mark.asyncio
    async def test_store_failure_restores_previous_schedule(self, service, store, one_day):
        await service.run_optimization(OptimizationConfig(one_day))
        before = service.get_schedule()
        store.replace_generated_events = AsyncMock(side_effect=RuntimeError("store unavailable"))
        with pytest.raises(RuntimeError):
            await service.run_optimization(OptimizationConfig(one_day, AlgorithmType.HYBRID))
        assert service.get_schedule() == before

    @pytest.mark.asyncio
    async def test_pin_added_during_run_wins(self, service, one_day, monday, monkeypatch):
        started, proceed = threading.Event(), threading.Event()

        def fake_generate(graph, blocks, events, config, settings, cancel):
            started.set()
            proceed.wait(5)
            return OptimizationResult(
                events=[generated("b", monday, 540, 600)],
                unscheduled_task_ids=[],
                algorithm_type=config.algorithm_type,
            )

        monkeypatch.setattr("taskplanner.service.generate_schedule", fake_generate)
        run = asyncio.create_task(service.run_optimization(OptimizationConfig(one_day)))
        await wait_for(started)
        pin = await service.create_event("c", monday, 570, 630)
        proceed.set()

        result = await run

        assert result.unscheduled_task_ids == ["b"]
        assert [ev.id for ev in result.events] == [pin.id]

    @pytest.mark.asyncio
    async def test_task_blocked_during_run_is_not_committed(self, service, store, one_day,
                                                            monday, monkeypatch):
        started, proceed = threading.Event(), threading.Event()

        def fake_generate(graph, blocks, events, config, settings, cancel):
            started.set()
            proceed.wait(5)
            return OptimizationResult(
                events=[generated("a", monday, 540, 630), generated("b", monday, 630, 690)],
                unscheduled_task_ids=[],
                algorithm_type=config.algorithm_type,
            )

        monkeypatch.setattr("taskplanner.service.generate_schedule", fake_generate)
        run = asyncio.create_task(service.run_optimization(OptimizationConfig(one_day)))
        await wait_for(started)
        assert (await service.add_dependency("b", "a")).is_valid
        proceed.set()

        result = await run

        assert service.graph.is_blocked("b")
        assert [ev.source_task_id for ev in result.events] == ["a"]
        assert result.blocked_task_ids == ["b"]
        assert "b" not in result.unscheduled_task_ids
        assert all(ev.source_task_id != "b" for ev in service.get_schedule())
        assert all(ev.source_task_id != "b" for ev in await store.list_events())

    @pytest.mark.asyncio
    async def test_pinned_minutes_changed_during_run_reports_task(self, service, one_day,
                                                                  monday, monkeypatch):
        started, proceed = threading.Event(), threading.Event()

        def fake_generate(graph, blocks, events, config, settings, cancel):
            started.set()
            proceed.wait(5)
            return OptimizationResult(
                events=[generated("c", monday, 540, 660)],
                unscheduled_task_ids=[],
                algorithm_type=config.algorithm_type,
            )

        monkeypatch.setattr("taskplanner.service.generate_schedule", fake_generate)
        run = asyncio.create_task(service.run_optimization(OptimizationConfig(one_day)))
        await wait_for(started)
        pin = await service.create_event("c", monday, 900, 960)
        proceed.set()

        result = await run

        assert result.events == [pin]
        assert result.unscheduled_task_ids == ["c"]

    @pytest.mark.asyncio
    async def test_pinning_one_part_reschedules_the_rest(self, store, settings, week,
                                                         monday, make_task):
        service = PlannerService(
            store, settings, graph=TaskGraph([make_task("long", estimated_duration_hours=10)]))
        first = await service.run_optimization(OptimizationConfig(week))
        assert [(ev.id, ev.task_part, ev.total_parts) for ev in first.events] == [
            ("evt-long-1", 1, 2), ("evt-long-2", 2, 2)]

        pin = await service.update_event("evt-long-1", monday, 540, 750)
        second = await service.run_optimization(OptimizationConfig(week))

        assert pin in second.events
        rest = [ev for ev in second.events if not ev.is_manual_override]
        assert sum(ev.duration_min for ev in rest) == 600 - pin.duration_min
        assert [(ev.task_part, ev.total_parts) for ev in rest] == [(2, 3), (3, 3)]
        assert "evt-long-1" not in {ev.id for ev in rest}
        assert second.unscheduled_task_ids == []
        assert await store.list_events() == service.get_schedule() == second.events

    @pytest.mark.asyncio
    async def test_cancelled_run_commits_nothing(self, service, store, one_day, monday,
                                                 monkeypatch):
        started = threading.Event()

        def slow_generate(graph, blocks, events, config, settings, cancel):
            started.set()
            cancel.wait(5)
            return OptimizationResult(
                events=[generated("b", monday, 540, 600)],
                unscheduled_task_ids=[],
                algorithm_type=config.algorithm_type,
            )

        monkeypatch.setattr("taskplanner.service.generate_schedule", slow_generate)
        run = asyncio.create_task(service.run_optimization(OptimizationConfig(one_day)))
        await wait_for(started)

        assert service.cancel_optimization() is True
        with pytest.raises(OptimizationCancelled):
            await run

        assert service.get_schedule() == []
        assert await store.list_events() == []
        assert not service.is_optimizing
        assert service.cancel_optimization() is False

    @pytest.mark.asyncio
    async def test_cancelling_the_awaiting_task_stops_the_worker(self, service, one_day,
                                                                 monday, monkeypatch):
        started = threading.Event()
        seen = []

        def slow_generate(graph, blocks, events, config, settings, cancel):
            seen.append(cancel)
            started.set()
            cancel.wait(5)
            return OptimizationResult(events=[], unscheduled_task_ids=[],
                                      algorithm_type=config.algorithm_type)

        monkeypatch.setattr("taskplanner.service.generate_schedule", slow_generate)
        run = asyncio.create_task(service.run_optimization(OptimizationConfig(one_day)))
        await wait_for(started)
        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run
        assert seen[0].is_set()
        assert service.get_schedule() == []

    @pytest.mark.asyncio
    async def test_new_run_supersedes_in_flight_run(self, service, one_day, monday, monkeypatch):
        started = threading.Event()
        seen = []

        def fake_generate(graph, blocks, events, config, settings, cancel):
            seen.append(cancel)
            if len(seen) == 1:
                started.set()
                cancel.wait(5)
            return OptimizationResult(
                events=[generated("b", monday, 540, 600)],
                unscheduled_task_ids=[],
                algorithm_type=config.algorithm_type,
            )

        monkeypatch.setattr("taskplanner.service.generate_schedule", fake_generate)
        first = asyncio.create_task(service.run_optimization(OptimizationConfig(one_day)))
        await wait_for(started)

        second = await service.run_optimization(OptimizationConfig(one_day))

        with pytest.raises(OptimizationCancelled):
            await first
        assert seen[0].is_set()
        assert [ev.id for ev in second.events] == ["evt-b-1"]
        assert [ev.id for ev in service.get_schedule()] == ["evt-b-1"]


@pytest.mark.asyncio
async def test_snapshot_is_detached(service, monday):
    await service.create_event("a", monday, 540, 630)
    snap = service.snapshot()
    await service.add_dependency("b", "a")
    await service.remove_event(snap.events[0].id)
    assert snap.graph.dependencies == []
    assert len(snap.events) == 1
