# taskplanner/graph.py
"""
Task dependency DAG plus the separate parent/subtask containment tree.

Tasks live in an id-keyed arena; edges are TaskDependency records indexed by
two adjacency maps (prerequisites and dependents). Every structural check is
iterative so deep graphs never hit the recursion limit.
"""
import copy
from collections import defaultdict, deque
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

import structlog

from .models import (
    DependencyType,
    Task,
    TaskDependency,
    ValidationReason,
    ValidationResult,
)

log = structlog.get_logger()


class TaskGraph:
    def __init__(self, tasks: Iterable[Task] = ()):
        self._tasks: Dict[str, Task] = {}
        self._edges: Dict[str, TaskDependency] = {}
        self._prerequisites: Dict[str, Set[str]] = defaultdict(set)
        self._dependents: Dict[str, Set[str]] = defaultdict(set)
        self._next_id = 1
        for task in tasks:
            self.add_task(task)

    # Task records

    @property
    def tasks(self) -> List[Task]:
        return list(self._tasks.values())

    @property
    def dependencies(self) -> List[TaskDependency]:
        return list(self._edges.values())

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def add_task(self, task: Task) -> None:
        if task.id in self._tasks:
            raise ValueError(f"task {task.id!r} already exists")
        self._tasks[task.id] = task

    def update_task(self, task: Task) -> None:
        if task.id not in self._tasks:
            raise KeyError(task.id)
        self._tasks[task.id] = task

    def remove_task(self, task_id: str) -> Optional[Task]:
        """Drop a task and every edge touching it. Subtasks become roots."""
        task = self._tasks.pop(task_id, None)
        if task is None:
            return None
        for dep in [d for d in self._edges.values()
                    if task_id in (d.task_id, d.depends_on_task_id)]:
            self._unlink(dep)
        for child in self.children(task_id):
            child.parent_task_id = None
        return task

    # Dependencies

    def dependencies_of(self, task_id: str) -> List[TaskDependency]:
        return sorted(
            (d for d in self._edges.values() if d.task_id == task_id),
            key=lambda d: d.depends_on_task_id,
        )

    def validate_dependency(self, task_id: str, depends_on_task_id: str) -> ValidationResult:
        task = self._tasks.get(task_id)
        depends_on = self._tasks.get(depends_on_task_id)
        if task is None:
            return ValidationResult.rejected(
                ValidationReason.TASK_NOT_FOUND, "Task not found")
        if depends_on is None:
            return ValidationResult.rejected(
                ValidationReason.TASK_NOT_FOUND, "Dependency task not found")

        if task_id == depends_on_task_id:
            return ValidationResult.rejected(
                ValidationReason.SELF_DEPENDENCY, "Task cannot depend on itself")

        if depends_on_task_id in self._prerequisites.get(task_id, ()):
            return ValidationResult.rejected(
                ValidationReason.DUPLICATE_DEPENDENCY, "Dependency already exists")

        # task_id reachable from depends_on_task_id => the new edge closes a loop
        if self._reaches(depends_on_task_id, task_id):
            return ValidationResult.rejected(
                ValidationReason.CYCLE,
                "This would create a circular dependency",
                would_create_cycle=True,
            )

        if self._is_descendant(depends_on_task_id, task_id):
            return ValidationResult.rejected(
                ValidationReason.SUBTASK_DEPENDENCY,
                "Cannot create dependency with own subtask",
            )

        warnings = []
        if task.project_id and depends_on.project_id and task.project_id != depends_on.project_id:
            warnings.append("Tasks are in different projects")
        return ValidationResult.ok(warnings)

    def add_dependency(self, task_id: str, depends_on_task_id: str,
                       dependency_type: DependencyType = DependencyType.FINISH_TO_START,
                       lag_days: int = 0,
                       dependency_id: Optional[str] = None) -> ValidationResult:
        result = self.validate_dependency(task_id, depends_on_task_id)
        if not result.is_valid:
            log.info(
                "dependency_rejected",
                task_id=task_id,
                depends_on_task_id=depends_on_task_id,
                reason=result.reason.value,
            )
            return result

        dep = TaskDependency(
            id=dependency_id or self._new_dependency_id(),
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
            dependency_type=dependency_type,
            lag_days=lag_days,
            created_at=datetime.now(),
        )
        self.insert_dependency(dep)
        result.dependency = dep
        return result

    def insert_dependency(self, dep: TaskDependency) -> None:
        """Put back an edge that was validated earlier (used by rollbacks)."""
        if dep.id in self._edges:
            raise ValueError(f"dependency {dep.id!r} already exists")
        self._edges[dep.id] = dep
        self._prerequisites[dep.task_id].add(dep.depends_on_task_id)
        self._dependents[dep.depends_on_task_id].add(dep.task_id)

    def _new_dependency_id(self) -> str:
        while f"dep-{self._next_id}" in self._edges:
            self._next_id += 1
        dep_id = f"dep-{self._next_id}"
        self._next_id += 1
        return dep_id

    def get_dependency(self, dependency_id: str) -> Optional[TaskDependency]:
        return self._edges.get(dependency_id)

    def remove_dependency(self, dependency_id: str) -> bool:
        """Remove an edge. A missing edge is a no-op; returns whether one was removed."""
        dep = self._edges.get(dependency_id)
        if dep is None:
            return False
        self._unlink(dep)
        return True

    def _unlink(self, dep: TaskDependency) -> None:
        del self._edges[dep.id]
        self._prerequisites[dep.task_id].discard(dep.depends_on_task_id)
        self._dependents[dep.depends_on_task_id].discard(dep.task_id)

    def _reaches(self, start_id: str, target_id: str) -> bool:
        """Iterative DFS along prerequisite edges."""
        visited: Set[str] = set()
        stack = [start_id]
        while stack:
            current = stack.pop()
            if current == target_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            stack.extend(self._prerequisites.get(current, ()))
        return False

    # Blocking

    def is_blocked(self, task_id: str) -> bool:
        # direct edges only: an upstream task cannot be DONE while its own
        # prerequisites are open
        return any(
            not self._tasks[pid].is_done
            for pid in self._prerequisites.get(task_id, ())
            if pid in self._tasks
        )

    def blocked_by(self, task_id: str) -> List[Task]:
        """Direct prerequisites that are not DONE yet."""
        return sorted(
            (self._tasks[pid] for pid in self._prerequisites.get(task_id, ())
             if pid in self._tasks and not self._tasks[pid].is_done),
            key=lambda t: t.id,
        )

    def blocking(self, task_id: str) -> List[Task]:
        """Tasks that directly depend on ``task_id``."""
        return sorted(
            (self._tasks[tid] for tid in self._dependents.get(task_id, ())
             if tid in self._tasks),
            key=lambda t: t.id,
        )

    # Containment tree

    def children(self, task_id: str) -> List[Task]:
        return sorted(
            (t for t in self._tasks.values() if t.parent_task_id == task_id),
            key=lambda t: t.id,
        )

    def descendants(self, task_id: str) -> List[Task]:
        out: List[Task] = []
        queue = deque(self.children(task_id))
        seen: Set[str] = set()
        while queue:
            task = queue.popleft()
            if task.id in seen:
                continue
            seen.add(task.id)
            out.append(task)
            queue.extend(self.children(task.id))
        return out

    def ancestors(self, task_id: str) -> List[Task]:
        out: List[Task] = []
        seen: Set[str] = {task_id}
        task = self._tasks.get(task_id)
        while task is not None and task.parent_task_id and task.parent_task_id not in seen:
            seen.add(task.parent_task_id)
            task = self._tasks.get(task.parent_task_id)
            if task is not None:
                out.append(task)
        return out

    def _is_descendant(self, candidate_id: str, ancestor_id: str) -> bool:
        return any(a.id == ancestor_id for a in self.ancestors(candidate_id))

    def reparent(self, task_id: str, new_parent_id: Optional[str]) -> ValidationResult:
        task = self._tasks.get(task_id)
        if task is None:
            return ValidationResult.rejected(
                ValidationReason.TASK_NOT_FOUND, "Task not found")
        if new_parent_id is not None:
            if new_parent_id not in self._tasks:
                return ValidationResult.rejected(
                    ValidationReason.TASK_NOT_FOUND, "Parent task not found")
            if new_parent_id == task_id or self._is_descendant(new_parent_id, task_id):
                return ValidationResult.rejected(
                    ValidationReason.CONTAINMENT_CYCLE,
                    "A task cannot be moved under its own subtask",
                )
        task.parent_task_id = new_parent_id
        return ValidationResult.ok()

    # Whole-graph views

    def topological_order(self) -> List[str]:
        """Prerequisites first; ties broken by task id."""
        indegree = {tid: 0 for tid in self._tasks}
        for dep in self._edges.values():
            indegree[dep.task_id] += 1
        ready = sorted(tid for tid, deg in indegree.items() if deg == 0)
        order: List[str] = []
        while ready:
            tid = ready.pop(0)
            order.append(tid)
            for nxt in sorted(self._dependents.get(tid, ())):
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    ready.append(nxt)
            ready.sort()
        if len(order) != len(self._tasks):
            raise RuntimeError("dependency graph contains a cycle")
        return order

    def copy(self) -> "TaskGraph":
        """Independent snapshot for scheduler runs."""
        return copy.deepcopy(self)
