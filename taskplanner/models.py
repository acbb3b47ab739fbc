# taskplanner/models.py
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Union


MINUTES_PER_DAY = 24 * 60

_EPOCH = date(1970, 1, 1)


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class DependencyType(str, Enum):
    # dependent cannot start before the depended-on task is DONE
    FINISH_TO_START = "FINISH_TO_START"


class EventStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WindowTag(str, Enum):
    FOCUS = "focus"
    REGULAR = "regular"


class AlgorithmType(str, Enum):
    LOCAL_HEURISTIC = "local_heuristic"
    MILP_OPTIMIZED = "milp_optimized"
    HYBRID = "hybrid"


class ValidationReason(str, Enum):
    TASK_NOT_FOUND = "task_not_found"
    EVENT_NOT_FOUND = "event_not_found"
    SELF_DEPENDENCY = "self_dependency"
    DUPLICATE_DEPENDENCY = "duplicate_dependency"
    CYCLE = "cycle"
    SUBTASK_DEPENDENCY = "subtask_dependency"
    CONTAINMENT_CYCLE = "containment_cycle"
    BLOCKED_TASK = "blocked_task"
    TASK_DONE = "task_done"
    INVALID_TIME = "invalid_time"


def as_date(value: Union[date, datetime]) -> date:
    """Deadlines may be given as a date or a datetime; compare them by day."""
    if isinstance(value, datetime):
        return value.date()
    return value


@dataclass
class Task:
    id: str
    title: str
    priority: Priority = Priority.MEDIUM
    estimated_duration_hours: float = 1.0
    deadline: Optional[Union[date, datetime]] = None
    is_deep_work: bool = False
    parent_task_id: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    tags: FrozenSet[str] = frozenset()
    category: Optional[str] = None
    project_id: Optional[str] = None

    def __post_init__(self):
        if not self.estimated_duration_hours or self.estimated_duration_hours <= 0:
            raise ValueError(
                f"task {self.id!r}: estimated_duration_hours must be > 0"
            )
        self.priority = Priority(self.priority)
        self.status = TaskStatus(self.status)
        self.tags = frozenset(self.tags)

    @property
    def duration_min(self) -> int:
        # rounded first so hours derived from minutes map back exactly
        return int(math.ceil(round(self.estimated_duration_hours * 60, 6)))

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatus.DONE


@dataclass(frozen=True)
class TaskDependency:
    id: str
    task_id: str
    depends_on_task_id: str
    dependency_type: DependencyType = DependencyType.FINISH_TO_START
    lag_days: int = 0
    created_at: Optional[datetime] = None


@dataclass
class FocusTimeBlock:
    id: str
    day_of_week: int   # 0 = Monday, like date.weekday()
    start_min: int
    end_min: int
    is_enabled: bool = True
    block_name: str = "Focus time"

    def __post_init__(self):
        if not 0 <= self.day_of_week <= 6:
            raise ValueError(f"focus block {self.id!r}: day_of_week must be 0..6")
        if not 0 <= self.start_min < self.end_min <= MINUTES_PER_DAY:
            raise ValueError(
                f"focus block {self.id!r}: need 0 <= start_min < end_min <= 1440"
            )


@dataclass(frozen=True)
class TimeWindow:
    day: date
    start_min: int
    end_min: int
    tag: WindowTag = WindowTag.REGULAR

    @property
    def capacity_min(self) -> int:
        return self.end_min - self.start_min

    @property
    def is_focus(self) -> bool:
        return self.tag == WindowTag.FOCUS


@dataclass(frozen=True)
class UtilityBreakdown:
    priority_score: float = 0.0
    deadline_score: float = 0.0
    focus_time_bonus: float = 0.0
    context_switch_penalty: float = 0.0
    reason: str = ""

    @property
    def total_utility(self) -> float:
        # penalty is already negative
        return (
            self.priority_score
            + self.deadline_score
            + self.focus_time_bonus
            + self.context_switch_penalty
        )


@dataclass
class ScheduleEvent:
    id: str
    source_task_id: str
    day: date
    start_min: int
    end_min: int
    task_part: int = 1
    total_parts: int = 1
    is_manual_override: bool = False
    status: EventStatus = EventStatus.SCHEDULED
    utility: float = 0.0
    utility_breakdown: Optional[UtilityBreakdown] = None
    window_tag: WindowTag = WindowTag.REGULAR
    version: int = 0

    @property
    def duration_min(self) -> int:
        return self.end_min - self.start_min

    @property
    def date_ms(self) -> int:
        """Midnight of ``day`` in epoch milliseconds."""
        return (self.day - _EPOCH).days * 86_400_000

    @property
    def is_pinned(self) -> bool:
        return self.is_manual_override and self.status == EventStatus.SCHEDULED

    def overlaps(self, other: "ScheduleEvent") -> bool:
        return (
            self.day == other.day
            and self.start_min < other.end_min
            and other.start_min < self.end_min
        )


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date   # exclusive

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError("date range end must not precede start")

    def days(self) -> List[date]:
        return [self.start + timedelta(days=i) for i in range((self.end - self.start).days)]

    def __contains__(self, day: date) -> bool:
        return self.start <= day < self.end


@dataclass(frozen=True)
class Goals:
    """Multipliers applied to the scorer's base weights."""
    priority: float = 1.0
    deadline: float = 1.0
    focus_time: float = 1.0
    context_switch: float = 1.0

    def __post_init__(self):
        for name in ("priority", "deadline", "focus_time", "context_switch"):
            if getattr(self, name) < 0:
                raise ValueError(f"goal weight {name} must be >= 0")

    @classmethod
    def from_percentages(cls, priority: float, deadline: float,
                         focus_time: float, context_switch: float) -> "Goals":
        """Map the settings sliders (0..100) onto multipliers (0..1)."""
        return cls(priority / 100.0, deadline / 100.0,
                   focus_time / 100.0, context_switch / 100.0)


@dataclass(frozen=True)
class Constraints:
    respect_focus_blocks: bool = True
    no_tasks_before_hour: int = 8
    max_hours_per_day: int = 8
    allow_weekends: bool = False
    buffer_minutes: int = 0         # gap between tasks


@dataclass(frozen=True)
class OptimizationConfig:
    date_range: DateRange
    algorithm_type: AlgorithmType = AlgorithmType.LOCAL_HEURISTIC
    goals: Goals = field(default_factory=Goals)
    constraints: Constraints = field(default_factory=Constraints)
    reference_day: Optional[date] = None

    @property
    def today(self) -> date:
        return self.reference_day or self.date_range.start


@dataclass
class OptimizationResult:
    events: List[ScheduleEvent]
    unscheduled_task_ids: List[str]
    algorithm_type: AlgorithmType
    blocked_task_ids: List[str] = field(default_factory=list)
    total_utility: float = 0.0
    used_fallback: bool = False

    @property
    def unscheduled_count(self) -> int:
        return len(self.unscheduled_task_ids)


@dataclass
class ValidationResult:
    is_valid: bool
    would_create_cycle: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    reason: Optional[ValidationReason] = None
    dependency: Optional[TaskDependency] = None

    @classmethod
    def ok(cls, warnings: Iterable[str] = ()) -> "ValidationResult":
        return cls(is_valid=True, warnings=list(warnings))

    @classmethod
    def rejected(cls, reason: ValidationReason, message: str,
                 would_create_cycle: bool = False) -> "ValidationResult":
        return cls(
            is_valid=False,
            would_create_cycle=would_create_cycle,
            errors=[message],
            reason=reason,
        )
