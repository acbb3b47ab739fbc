# taskplanner/commands.py
import copy
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog

from .metrics import ROLLBACKS

log = structlog.get_logger()

T = TypeVar("T")


@dataclass
class OptimisticCommand(Generic[T]):
    """
    Apply a local change before the store has confirmed it.

    ``apply`` installs a value into session state (None means "absent").
    ``confirm`` persists the new value; if it raises, the previous value is
    put back exactly as it was and the error propagates to the caller.
    """
    kind: str
    previous: Optional[T]
    new: Optional[T]
    apply: Callable[[Optional[T]], None]
    confirm: Callable[[], Awaitable[Any]]

    def __post_init__(self):
        self.previous = copy.deepcopy(self.previous)
        self.new = copy.deepcopy(self.new)

    async def execute(self) -> Any:
        self.apply(copy.deepcopy(self.new))
        try:
            return await self.confirm()
        except Exception as exc:
            self.rollback()
            log.warning("optimistic_update_rolled_back", kind=self.kind, error=str(exc))
            raise

    def rollback(self) -> None:
        ROLLBACKS.labels(kind=self.kind).inc()
        self.apply(copy.deepcopy(self.previous))
