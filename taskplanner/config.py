# taskplanner/config.py
import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@dataclass
class PlannerSettings:
    slot_minutes: int = 30          # scheduling grid
    work_start_hour: int = 9        # default working hours
    work_end_hour: int = 17
    milp_max_solve_seconds: float = 5.0
    hybrid_max_iterations: int = 1000

    def __post_init__(self):
        if self.slot_minutes <= 0 or 60 % self.slot_minutes:
            raise ValueError("slot_minutes must divide 60")
        if not 0 <= self.work_start_hour < self.work_end_hour <= 24:
            raise ValueError("need 0 <= work_start_hour < work_end_hour <= 24")

    @classmethod
    def from_env(cls) -> "PlannerSettings":
        """Defaults overridable through TASKPLANNER_* environment variables."""
        return cls(
            slot_minutes=_env_int("TASKPLANNER_SLOT_MINUTES", 30),
            work_start_hour=_env_int("TASKPLANNER_WORK_START_HOUR", 9),
            work_end_hour=_env_int("TASKPLANNER_WORK_END_HOUR", 17),
            milp_max_solve_seconds=_env_float("TASKPLANNER_MILP_MAX_SOLVE_SECONDS", 5.0),
            hybrid_max_iterations=_env_int("TASKPLANNER_HYBRID_MAX_ITERATIONS", 1000),
        )
