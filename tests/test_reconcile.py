"""merge_with_pins: pinned events always win."""

from taskplanner.models import ScheduleEvent
from taskplanner.reconcile import merge_with_pins


def event(event_id, task_id, day, start_min, end_min, manual=False):
    return ScheduleEvent(
        id=event_id,
        source_task_id=task_id,
        day=day,
        start_min=start_min,
        end_min=end_min,
        is_manual_override=manual,
    )


class TestMergeWithPins:
    def test_clashing_task_dropped_with_all_parts(self, monday):
        pin = event("evt-p-m1", "p", monday, 600, 660, manual=True)
        new = [
            event("evt-a-1", "a", monday, 540, 630),
            event("evt-a-2", "a", monday, 900, 960),
            event("evt-b-1", "b", monday, 660, 720),
        ]

        merged = merge_with_pins(new, [pin])

        assert [ev.id for ev in merged.events] == ["evt-p-m1", "evt-b-1"]
        assert [ev.id for ev in merged.dropped_events] == ["evt-a-1", "evt-a-2"]
        assert merged.unscheduled_task_ids == ["a"]

    def test_touching_is_not_overlapping(self, monday):
        pin = event("evt-p-m1", "p", monday, 600, 660, manual=True)
        merged = merge_with_pins([event("evt-a-1", "a", monday, 540, 600)], [pin])
        assert merged.unscheduled_task_ids == []
        assert [ev.id for ev in merged.events] == ["evt-a-1", "evt-p-m1"]

    def test_pins_pass_through_unchanged(self, monday):
        pin = event("evt-p-m1", "p", monday, 600, 660, manual=True)
        pin.version = 7
        merged = merge_with_pins([], [pin])
        assert merged.events == [pin]

    def test_manual_events_in_new_list_are_ignored(self, monday):
        stray = event("evt-x-m1", "x", monday, 540, 600, manual=True)
        merged = merge_with_pins([stray], [])
        assert merged.events == []
