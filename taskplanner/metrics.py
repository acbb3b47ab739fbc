# taskplanner/metrics.py
from prometheus_client import Counter, Summary


SCHEDULE_TIME = Summary(
    "schedule_generation_seconds",
    "Time spent generating a schedule",
    ["algorithm"],
)

UNSCHEDULED_TASKS = Counter(
    "schedule_unscheduled_tasks_total",
    "Eligible tasks left out of a schedule run",
    ["algorithm"],
)

DROP_OUTCOMES = Counter(
    "schedule_drop_total",
    "Drag/drop gestures by outcome",
    ["outcome"],
)

ROLLBACKS = Counter(
    "schedule_optimistic_rollbacks_total",
    "Optimistic updates rolled back after the store rejected them",
    ["kind"],
)
