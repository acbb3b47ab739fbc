import asyncio
from datetime import date, datetime, timedelta

import pandas as pd
import plotly.express as px
import streamlit as st
from prometheus_client import start_http_server
from streamlit_calendar import calendar

from taskplanner.config import PlannerSettings
from taskplanner.dragdrop import DragDropCoordinator
from taskplanner.errors import PlannerError
from taskplanner.logging_config import setup_logging
from taskplanner.models import (
    AlgorithmType,
    Constraints,
    DateRange,
    FocusTimeBlock,
    Goals,
    OptimizationConfig,
    Priority,
    Task,
)
from taskplanner.scheduler import events_frame
from taskplanner.service import PlannerService
from taskplanner.store import InMemoryScheduleStore


# Start metrics server and logging only once
if "metrics_started" not in st.session_state:
    setup_logging()
    start_http_server(8000)
    st.session_state.metrics_started = True


# Session State Setup
if "loop" not in st.session_state:
    st.session_state.loop = asyncio.new_event_loop()

if "service" not in st.session_state:
    st.session_state.service = PlannerService(
        InMemoryScheduleStore(), PlannerSettings.from_env())

if "coordinator" not in st.session_state:
    st.session_state.coordinator = DragDropCoordinator(st.session_state.service)

if "week_start" not in st.session_state:
    today = date.today()
    st.session_state.week_start = today - timedelta(days=today.weekday())  # this Monday

if "last_result" not in st.session_state:
    st.session_state.last_result = None

if "last_callback" not in st.session_state:
    st.session_state.last_callback = None

service: PlannerService = st.session_state.service
coordinator: DragDropCoordinator = st.session_state.coordinator


def run(coro):
    return st.session_state.loop.run_until_complete(coro)


def minutes_of(t) -> int:
    return t.hour * 60 + t.minute


def naive(iso: str) -> datetime:
    """FullCalendar sends local wall-clock times, sometimes with an offset."""
    return datetime.fromisoformat(iso).replace(tzinfo=None)


def report_drop(result):
    if result.accepted:
        st.success("Event pinned.")
    else:
        st.error(result.reason or "Drop rejected.")


# Sidebar: Inputs
st.sidebar.title("Task Planner")

st.sidebar.subheader("Week")
week_date = st.sidebar.date_input("Week of (Monday)", value=st.session_state.week_start)
st.session_state.week_start = week_date - timedelta(days=week_date.weekday())
week = DateRange(st.session_state.week_start, st.session_state.week_start + timedelta(days=7))

st.sidebar.subheader("Optimization")
algorithm = st.sidebar.selectbox(
    "Algorithm",
    list(AlgorithmType),
    index=list(AlgorithmType).index(AlgorithmType.HYBRID),
    format_func=lambda a: a.value.replace("_", " "),
)
respect_focus = st.sidebar.checkbox(
    "Respect focus blocks", value=True,
    help="Only schedule deep work during configured focus time blocks",
)
no_before = st.sidebar.number_input("No tasks before hour", 0, 23, value=8)
max_hours = st.sidebar.number_input("Max hours per day", 1, 24, value=8)
allow_weekends = st.sidebar.checkbox("Allow weekends?", value=False)
buffer_minutes = st.sidebar.number_input("Buffer between tasks (min)", 0, 120, value=0, step=5)

st.sidebar.subheader("Goals")
g_priority = st.sidebar.slider("Priority", 0, 100, 90)
g_deadline = st.sidebar.slider("Deadlines", 0, 100, 70)
g_focus = st.sidebar.slider("Focus time", 0, 100, 80)
g_switch = st.sidebar.slider("Avoid context switches", 0, 100, 60)

# Add Task
st.sidebar.subheader("Add Task")
with st.sidebar.form("task_form"):
    t_title = st.text_input("Title", key="t_title")
    t_priority = st.selectbox("Priority", list(Priority), index=1, format_func=lambda p: p.value)
    t_dur = st.number_input("Duration (hours)", min_value=0.5, max_value=8.0, step=0.5, value=1.0)
    t_deep = st.checkbox("Deep work", key="t_deep")
    t_category = st.text_input("Category (optional)", key="t_category")
    t_deadline_enable = st.checkbox("Has deadline?", key="t_deadline_enable")
    t_deadline = st.date_input("Deadline", key="t_deadline")
    add_task = st.form_submit_button("Add Task")
    if add_task:
        if t_title:
            task = Task(
                id=f"t{len(service.graph.tasks) + 1}",
                title=t_title,
                priority=t_priority,
                estimated_duration_hours=float(t_dur),
                deadline=t_deadline if t_deadline_enable else None,
                is_deep_work=t_deep,
                category=t_category or None,
            )
            run(service.create_task(task))
        else:
            st.sidebar.error("Please enter a task title.")

# Add Dependency
st.sidebar.subheader("Add Dependency")
task_ids = sorted(t.id for t in service.graph.tasks)
with st.sidebar.form("dependency_form"):
    d_task = st.selectbox("Task", task_ids, key="d_task")
    d_on = st.selectbox("Depends on", task_ids, key="d_on")
    add_dep = st.form_submit_button("Add Dependency")
    if add_dep and d_task and d_on:
        result = run(service.add_dependency(d_task, d_on))
        for message in result.errors:
            st.sidebar.error(message)
        for message in result.warnings:
            st.sidebar.warning(message)

# Add Focus Block
st.sidebar.subheader("Add Focus Block")
with st.sidebar.form("focus_form"):
    fb_day = st.selectbox("Weekday", range(7), format_func=lambda d: [
        "Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"][d])
    fb_start = st.time_input("Start", value=datetime(2000, 1, 1, 9).time(), key="fb_start")
    fb_end = st.time_input("End", value=datetime(2000, 1, 1, 11).time(), key="fb_end")
    add_block = st.form_submit_button("Add Focus Block")
    if add_block:
        blocks = service.focus_blocks
        try:
            blocks.append(FocusTimeBlock(
                id=f"fb{len(blocks) + 1}",
                day_of_week=fb_day,
                start_min=minutes_of(fb_start),
                end_min=minutes_of(fb_end),
            ))
        except ValueError as exc:
            st.sidebar.error(str(exc))
        else:
            run(service.set_focus_blocks(blocks))


# Main
st.title("Weekly Planner")

tasks = {t.id: t for t in service.graph.tasks}
if tasks:
    st.markdown("### Tasks")
    st.dataframe(pd.DataFrame([{
        "id": t.id,
        "title": t.title,
        "priority": t.priority.value,
        "hours": t.estimated_duration_hours,
        "deadline": t.deadline,
        "deep work": t.is_deep_work,
        "status": t.status.value,
        "blocked by": ", ".join(b.title for b in service.graph.blocked_by(t.id)),
    } for t in sorted(tasks.values(), key=lambda t: t.id)]))
else:
    st.write("No tasks yet.")

if st.button("Optimize Schedule"):
    config = OptimizationConfig(
        date_range=week,
        algorithm_type=algorithm,
        goals=Goals.from_percentages(g_priority, g_deadline, g_focus, g_switch),
        constraints=Constraints(
            respect_focus_blocks=respect_focus,
            no_tasks_before_hour=int(no_before),
            max_hours_per_day=int(max_hours),
            allow_weekends=allow_weekends,
            buffer_minutes=int(buffer_minutes),
        ),
    )
    try:
        st.session_state.last_result = run(service.run_optimization(config))
    except PlannerError as exc:
        st.error(str(exc))

result = st.session_state.last_result
if result is not None:
    st.caption(
        f"{result.algorithm_type.value}: total utility {result.total_utility:.1f}"
        + (" (greedy fallback)" if result.used_fallback else "")
    )
    if result.unscheduled_task_ids:
        st.warning("Unscheduled: " + ", ".join(result.unscheduled_task_ids))
    if result.blocked_task_ids:
        st.info("Blocked: " + ", ".join(result.blocked_task_ids))


# Calendar with drag and drop
schedule = service.get_schedule(week)
st.markdown("## Weekly Calendar View")


def event_color(ev):
    if ev.is_manual_override:
        return "#7f7f7f"  # grey
    if ev.window_tag.value == "focus":
        return "#9467bd"  # purple
    return "#1f77b4"      # blue


cal_events = []
for ev in schedule:
    start = datetime.combine(ev.day, datetime.min.time()) + timedelta(minutes=ev.start_min)
    end = datetime.combine(ev.day, datetime.min.time()) + timedelta(minutes=ev.end_min)
    title = tasks[ev.source_task_id].title if ev.source_task_id in tasks else ev.source_task_id
    if ev.total_parts > 1:
        title = f"{title} ({ev.task_part}/{ev.total_parts})"
    cal_events.append({
        "title": title,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "id": ev.id,
        "color": event_color(ev),
    })

cal_options = {
    "initialView": "timeGridWeek",
    "initialDate": week.start.isoformat(),
    "slotMinTime": "06:00:00",
    "slotMaxTime": "23:00:00",
    "slotDuration": f"00:{service.settings.slot_minutes:02d}:00",
    "allDaySlot": False,
    "nowIndicator": True,
    "editable": True,
    "firstDay": 1,  # Monday
}

state = calendar(events=cal_events, options=cal_options, key="calendar")

if state and state.get("callback") == "eventChange" and state != st.session_state.last_callback:
    st.session_state.last_callback = state
    change = state["eventChange"]
    new, old = change["event"], change["oldEvent"]
    if new["start"] == old["start"]:
        coordinator.begin_resize(new["id"])
    else:
        coordinator.begin_move(new["id"])
    report_drop(run(coordinator.drop_on_calendar(naive(new["start"]), naive(new["end"]))))
    st.rerun()

# Place a task by hand
open_tasks = [t.id for t in sorted(tasks.values(), key=lambda t: t.id) if not t.is_done]
if open_tasks:
    st.markdown("### Place a task manually")
    with st.form("place_form"):
        p_task = st.selectbox("Task", open_tasks,
                              format_func=lambda tid: tasks[tid].title)
        p_day = st.date_input("Day", value=week.start, key="p_day")
        p_time = st.time_input("Start", value=datetime(2000, 1, 1, 9).time(), key="p_time")
        place = st.form_submit_button("Place on calendar")
        if place:
            coordinator.begin_external(p_task)
            report_drop(run(coordinator.drop_on_calendar(datetime.combine(p_day, p_time))))

if schedule:
    st.markdown("### Remove an event")
    ev_ids = [ev.id for ev in schedule]
    sel = st.selectbox("Event", ev_ids, key="remove_sel")
    if st.button("Remove event"):
        run(service.remove_event(sel))
        st.rerun()

    # Utility plot for transparency
    frame = events_frame(schedule, tasks)
    frame = frame[~frame["manual"]]
    if not frame.empty:
        st.markdown("### Placement Utility")
        fig = px.bar(frame, x="id", y="utility", color="day", hover_data=["label", "reason"],
                     labels={"id": "Event", "utility": "Utility"})
        st.plotly_chart(fig, use_container_width=True)

    st.markdown("### Complete a task")
    done_sel = st.selectbox("Task", open_tasks, key="done_sel",
                            format_func=lambda tid: tasks[tid].title)
    if done_sel and st.button("Mark done"):
        run(service.complete_task(done_sel))
        st.rerun()
else:
    st.info("Add some tasks and click **Optimize Schedule** to see the calendar.")
