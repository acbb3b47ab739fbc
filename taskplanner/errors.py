# taskplanner/errors.py
"""
Error taxonomy for the planner core.

Structural graph violations are returned as ValidationResult objects; the
exceptions below are for malformed service input, solver failures and
store-side conflicts.
"""
from typing import Optional

from .models import ValidationReason


class PlannerError(Exception):
    """Base class for every planner error."""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        super().__init__(message)
        self.recoverable = recoverable


class ValidationError(PlannerError):
    def __init__(self, reason: ValidationReason, message: str) -> None:
        super().__init__(message, recoverable=True)
        self.reason = reason


class InfeasibleScheduleError(PlannerError):
    """The exact solver found no assignment, not even an empty one."""

    def __init__(self, status_name: str) -> None:
        super().__init__(
            f"no feasible schedule (solver status {status_name})",
            recoverable=False,
        )
        self.status_name = status_name


class ConcurrencyConflictError(PlannerError):
    """
    The store rejected a write because the entity changed or vanished
    since it was read. Callers roll back and re-fetch.
    """

    def __init__(self, entity_id: str, detail: Optional[str] = None) -> None:
        message = f"{entity_id} was modified or deleted concurrently"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, recoverable=True)
        self.entity_id = entity_id


class OptimizationCancelled(PlannerError):
    def __init__(self, message: str = "optimization cancelled") -> None:
        super().__init__(message, recoverable=True)
