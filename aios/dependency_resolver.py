# aios/dependency_resolver.py
"""
Dependency Resolver - which tasks of an orchestration are unblocked

A task is ready when it is TODO, every task it depends on is DONE, and it
has no open (PENDING / PROCESSING) queue entry. Completing a task re-checks
its dependents and enqueues the ones that became ready, which is how one
completion transitively unlocks a chain.

Also hosts the graph utilities used to validate a plan before its subtasks
exist: three-colour DFS cycle detection and Kahn execution levels.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from aios.events import AgentEventType, EventBus
from aios.exceptions import DependencyCycleError
from aios.models import OrchestrationStatus, Task, TaskStatus, priority_to_number
from aios.queue_manager import QueueManager
from aios.store import WorkStore

logger = logging.getLogger("aios.dependencies")

# Plans deeper than this get a sequential-bottleneck warning
MAX_RECOMMENDED_LEVELS = 5

WHITE, GRAY, BLACK = 0, 1, 2

# orchestration_id -> names of the checks still outstanding; empty means complete
CompletionGuard = Callable[[str], List[str]]


@dataclass
class GraphInput:
    """Minimal task shape accepted by build_dependency_graph"""
    id: str
    title: str
    priority: str = "MEDIUM"
    depends_on: List[str] = field(default_factory=list)


@dataclass
class DependencyNode:
    task_id: str
    title: str
    priority: str
    level: int = -1
    depends_on: List[str] = field(default_factory=list)
    dependents: List[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    nodes: Dict[str, DependencyNode]
    levels: List[List[str]]
    has_cycle: bool
    cycle: List[str] = field(default_factory=list)

    @property
    def total_levels(self) -> int:
        return len(self.levels)

    @property
    def can_parallelize(self) -> bool:
        return any(len(level) > 1 for level in self.levels)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "levels": [
                {
                    "level": i,
                    "task_ids": level,
                    "titles": [self.nodes[task_id].title for task_id in level],
                    "can_parallelize": len(level) > 1,
                }
                for i, level in enumerate(self.levels)
            ],
            "has_cycle": self.has_cycle,
            "cycle": self.cycle,
            "total_levels": self.total_levels,
            "can_parallelize": self.can_parallelize,
        }


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    graph: Optional[DependencyGraph] = None


class DependencyResolver:
    """Ready-task computation and dependent release"""

    def __init__(self, store: WorkStore, queue: QueueManager, bus: EventBus):
        self.store = store
        self.queue = queue
        self.bus = bus
        self._completion_guard: Optional[CompletionGuard] = None

    def set_completion_guard(self, guard: CompletionGuard) -> None:
        self._completion_guard = guard

    # =========================================================================
    # Ready tasks / release
    # =========================================================================

    def _dependencies_done(self, task_id: str) -> bool:
        return all(dep.status == TaskStatus.DONE.value for dep in self.store.get_dependencies(task_id))

    def get_ready_tasks(self, orchestration_id: str) -> List[Task]:
        candidates = [
            task for task in self.store.list_tasks(orchestration_id=orchestration_id, statuses=[TaskStatus.TODO])
            if self._dependencies_done(task.id)
        ]
        queued = self.store.queued_task_ids([task.id for task in candidates])
        return [task for task in candidates if task.id not in queued]

    def take_ready_tasks(self, orchestration_id: str) -> List[Task]:
        """
        Ready tasks with an agent, for a caller that runs them directly.

        Their PENDING queue entries are withdrawn; a task whose entry is
        already PROCESSING belongs to a queue poller and is left out.
        """
        taken: List[Task] = []
        for task in self.store.list_tasks(orchestration_id=orchestration_id, statuses=[TaskStatus.TODO]):
            if not task.agent_id or not self._dependencies_done(task.id):
                continue
            self.queue.withdraw_pending(task.id)
            if self.queue.has_open_entry(task.id):
                continue
            taken.append(task)
        return taken

    def on_task_completed(self, task_id: str) -> List[str]:
        """Enqueue dependents unlocked by task_id; returns their ids"""
        completed = self.store.get_task(task_id)
        if completed is None:
            return []

        unlocked: List[str] = []
        for dependent in self.store.get_dependents(task_id):
            if dependent.status != TaskStatus.TODO.value:
                continue
            if not dependent.agent_id or not dependent.orchestration_id:
                continue
            if not self._dependencies_done(dependent.id):
                continue
            if self.queue.has_open_entry(dependent.id):
                continue

            self.queue.enqueue(
                dependent.id,
                dependent.agent_id,
                priority=priority_to_number(dependent.priority),
            )
            unlocked.append(dependent.id)
            logger.info(f"Dependency released | completed={completed.title!r} | unlocked={dependent.title!r}")

        if completed.orchestration_id:
            self.update_orchestration_progress(completed.orchestration_id)

        if unlocked:
            logger.info(f"Unlocked dependents | task_id={task_id} | count={len(unlocked)}")
        return unlocked

    def update_orchestration_progress(self, orchestration_id: str) -> Dict[str, Any]:
        """
        Refresh counters; when every task is DONE and the completion guard
        has nothing outstanding, complete the orchestration and its parent.
        """
        orchestration = self.store.get_orchestration(orchestration_id)
        if orchestration is None:
            return {}

        total = self.store.count_tasks(orchestration_id)
        done = self.store.count_tasks(orchestration_id, status=TaskStatus.DONE)
        all_done = total > 0 and done == total
        outstanding = self._completion_guard(orchestration_id) if all_done and self._completion_guard else []
        complete = all_done and not outstanding

        if complete:
            current_phase = f"All {total} subtasks completed"
        elif all_done:
            current_phase = f"All {total} subtasks completed, awaiting review: {', '.join(outstanding)}"
        else:
            current_phase = f"{done}/{total} subtasks completed"

        fields: Dict[str, Any] = {
            "total_subtasks": total,
            "completed_subtasks": done,
            "current_phase": current_phase,
        }
        newly_completed = complete and orchestration.status != OrchestrationStatus.COMPLETED.value
        if newly_completed:
            fields["status"] = OrchestrationStatus.COMPLETED
            fields["completed_at"] = datetime.utcnow()
        self.store.update_orchestration(orchestration_id, **fields)

        if newly_completed:
            parent_id = orchestration.parent_task_id
            self.bus.emit(
                AgentEventType.EXECUTION_COMPLETED,
                {"orchestration_id": orchestration_id, "total_subtasks": total},
                task_id=parent_id,
            )
            if parent_id:
                parent = self.store.get_task(parent_id)
                if parent is not None and parent.status != TaskStatus.DONE.value:
                    self.store.set_task_status(parent_id, TaskStatus.DONE)
                    self.store.add_comment(
                        parent_id,
                        f"Completed automatically: all {total} subtasks finished",
                        author_name="AIOS",
                        author_type="SYSTEM",
                    )
            logger.info(f"Orchestration completed | orchestration_id={orchestration_id} | subtasks={total}")

        if outstanding:
            logger.info(f"Orchestration awaiting review | orchestration_id={orchestration_id} | phases={outstanding}")
        return {"total": total, "done": done, "completed": complete}

    # =========================================================================
    # Graph
    # =========================================================================

    def build_dependency_graph(self, tasks: List[GraphInput]) -> DependencyGraph:
        nodes: Dict[str, DependencyNode] = {
            t.id: DependencyNode(task_id=t.id, title=t.title, priority=t.priority, depends_on=list(t.depends_on))
            for t in tasks
        }
        for node in nodes.values():
            for dep_id in node.depends_on:
                dep = nodes.get(dep_id)
                if dep is not None and node.task_id not in dep.dependents:
                    dep.dependents.append(node.task_id)

        cycle = self._find_cycle(nodes)
        if cycle:
            return DependencyGraph(nodes=nodes, levels=[], has_cycle=True, cycle=cycle)

        # Kahn: only edges inside the graph count toward in-degree
        in_degree = {
            node.task_id: sum(1 for dep_id in node.depends_on if dep_id in nodes)
            for node in nodes.values()
        }
        levels: List[List[str]] = []
        current = [task_id for task_id, degree in in_degree.items() if degree == 0]
        while current:
            current.sort(key=lambda task_id: priority_to_number(nodes[task_id].priority), reverse=True)
            levels.append(current)
            next_level = []
            for task_id in current:
                nodes[task_id].level = len(levels) - 1
                for dependent_id in nodes[task_id].dependents:
                    in_degree[dependent_id] -= 1
                    if in_degree[dependent_id] == 0:
                        next_level.append(dependent_id)
            current = next_level

        return DependencyGraph(nodes=nodes, levels=levels, has_cycle=False)

    @staticmethod
    def _find_cycle(nodes: Dict[str, DependencyNode]) -> List[str]:
        """Titles along the first cycle found, closed on its first element"""
        color = {task_id: WHITE for task_id in nodes}
        path: List[str] = []

        def visit(task_id: str) -> List[str]:
            color[task_id] = GRAY
            path.append(task_id)
            for dep_id in nodes[task_id].depends_on:
                if dep_id not in nodes:
                    continue
                if color[dep_id] == GRAY:
                    loop = path[path.index(dep_id):] + [dep_id]
                    return [nodes[i].title for i in loop]
                if color[dep_id] == WHITE:
                    found = visit(dep_id)
                    if found:
                        return found
            path.pop()
            color[task_id] = BLACK
            return []

        for task_id in nodes:
            if color[task_id] == WHITE:
                found = visit(task_id)
                if found:
                    return found
        return []

    def get_execution_order(self, tasks: List[GraphInput]) -> List[GraphInput]:
        """Topological order, higher priority first within a level"""
        graph = self.build_dependency_graph(tasks)
        if graph.has_cycle:
            raise DependencyCycleError(graph.cycle)
        by_id = {t.id: t for t in tasks}
        return [by_id[task_id] for level in graph.levels for task_id in level]

    def graph_for_orchestration(self, orchestration_id: str) -> DependencyGraph:
        tasks = self.store.list_tasks(orchestration_id=orchestration_id)
        return self.build_dependency_graph([
            GraphInput(
                id=task.id,
                title=task.title,
                priority=task.priority,
                depends_on=[dep.id for dep in self.store.get_dependencies(task.id)],
            )
            for task in tasks
        ])

    def validate_plan(self, plan: Dict[str, Any]) -> ValidationResult:
        """
        Validate a title-based plan before its subtasks are created.

        Each subtask is {"title", "priority"?, "depends_on": [titles]}.
        """
        subtasks = [s for phase in plan.get("phases", []) for s in phase.get("subtasks", [])]
        titles = [s["title"] for s in subtasks]
        known = set(titles)
        errors: List[str] = []
        warnings: List[str] = []

        for title in sorted(known):
            count = titles.count(title)
            if count > 1:
                errors.append(f"Duplicate title: {title!r} appears {count} times")

        for subtask in subtasks:
            for dep in subtask.get("depends_on", []):
                if dep == subtask["title"]:
                    errors.append(f"{subtask['title']!r} depends on itself")
                elif dep not in known:
                    errors.append(f"{subtask['title']!r} depends on {dep!r}, which is not in the plan")

        if errors:
            return ValidationResult(valid=False, errors=errors, warnings=warnings)

        index = {title: str(i) for i, title in enumerate(titles)}
        graph = self.build_dependency_graph([
            GraphInput(
                id=index[s["title"]],
                title=s["title"],
                priority=s.get("priority", "MEDIUM"),
                depends_on=[index[dep] for dep in s.get("depends_on", [])],
            )
            for s in subtasks
        ])
        if graph.has_cycle:
            errors.append(f"Circular dependency detected: {' -> '.join(graph.cycle)}")
            return ValidationResult(valid=False, errors=errors, warnings=warnings, graph=graph)

        referenced = {dep for s in subtasks for dep in s.get("depends_on", [])}
        islands = [s["title"] for s in subtasks if not s.get("depends_on") and s["title"] not in referenced]
        if len(islands) > 1:
            warnings.append(
                f"{len(islands)} subtasks without dependencies can run in parallel: "
                + ", ".join(repr(t) for t in islands)
            )
        if graph.total_levels > MAX_RECOMMENDED_LEVELS:
            warnings.append(f"Deep dependency chain ({graph.total_levels} levels), consider parallelizing")
        if not referenced and len(subtasks) > 1:
            warnings.append("No dependencies declared: every subtask will run in parallel")

        return ValidationResult(valid=True, warnings=warnings, graph=graph)
