"""Task dependency graph and the JSON task file it is loaded from."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from parallel_orchestrator.orchestrator.heuristics import parallelism_confidence
from parallel_orchestrator.session.models import WorkUnit, WorkUnitTask

logger = logging.getLogger(__name__)

DEFAULT_WORK_UNIT = "default"


class UnknownDependencyError(ValueError):
    """A dependency names a task that is not part of the graph."""

    def __init__(self, task_id: str, dependency_id: str) -> None:
        super().__init__(f"Task {task_id!r} depends on unknown task {dependency_id!r}")
        self.task_id = task_id
        self.dependency_id = dependency_id


@dataclass(slots=True)
class TaskNode:
    """One schedulable task with author-declared and inferred dependencies."""

    id: str
    title: str
    description: str = ""
    depends_on: tuple[str, ...] = ()
    inferred_depends_on: tuple[str, ...] = ()
    confidence: float | None = None
    work_unit: str = DEFAULT_WORK_UNIT

    @property
    def dependencies(self) -> tuple[str, ...]:
        """Union of explicit and inferred dependencies, first occurrence wins."""

        return tuple(dict.fromkeys([*self.depends_on, *self.inferred_depends_on]))

    @property
    def parallelism_confidence(self) -> float:
        if self.confidence is not None:
            return self.confidence
        return parallelism_confidence(self.title, self.description)


@dataclass(slots=True)
class DependencyGraph:
    """Insertion-ordered task nodes plus derived reverse adjacency.

    Built once per run and never mutated afterwards; completion marks live in
    the scheduling policies.
    """

    nodes: dict[str, TaskNode]
    _dependents: dict[str, tuple[str, ...]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        dependents: dict[str, list[str]] = {task_id: [] for task_id in self.nodes}
        for node in self.nodes.values():
            for dependency in node.dependencies:
                dependents[dependency].append(node.id)
        self._dependents = {key: tuple(value) for key, value in dependents.items()}

    @classmethod
    def from_nodes(cls, nodes: Iterable[TaskNode]) -> DependencyGraph:
        """Validate and index nodes: drop self-references, reject unknown ids."""

        ordered: dict[str, TaskNode] = {}
        for node in nodes:
            if node.id in ordered:
                raise ValueError(f"Duplicate task id: {node.id!r}")
            ordered[node.id] = node
        for node in ordered.values():
            if node.id in node.depends_on or node.id in node.inferred_depends_on:
                logger.debug("Dropping self-dependency of task %s", node.id)
                node.depends_on = tuple(dep for dep in node.depends_on if dep != node.id)
                node.inferred_depends_on = tuple(
                    dep for dep in node.inferred_depends_on if dep != node.id
                )
            for dependency in node.dependencies:
                if dependency not in ordered:
                    raise UnknownDependencyError(node.id, dependency)
        return cls(nodes=ordered)

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[TaskNode]:
        return iter(self.nodes.values())

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.nodes

    @property
    def task_ids(self) -> list[str]:
        return list(self.nodes)

    def get(self, task_id: str) -> TaskNode:
        return self.nodes[task_id]

    def dependencies_of(self, task_id: str) -> tuple[str, ...]:
        return self.nodes[task_id].dependencies

    def dependents_of(self, task_id: str) -> tuple[str, ...]:
        return self._dependents[task_id]

    def is_isolated(self, task_id: str) -> bool:
        return not self.dependencies_of(task_id) and not self.dependents_of(task_id)

    def work_units(self) -> list[WorkUnit]:
        """Group tasks by work unit in first-seen order."""

        units: dict[str, list[WorkUnitTask]] = {}
        for node in self.nodes.values():
            units.setdefault(node.work_unit, []).append(WorkUnitTask(id=node.id, title=node.title))
        return [
            WorkUnit(id=unit_id, name=unit_id, tasks=tasks, priority=float(index))
            for index, (unit_id, tasks) in enumerate(units.items())
        ]


def load_task_file(path: Path) -> DependencyGraph:
    """Read ``{"tasks": [...]}`` from disk and build the graph."""

    try:
        raw = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Task file {path} is not valid JSON: {error}") from error
    return parse_task_payload(raw, source=str(path))


def parse_task_payload(raw: Any, *, source: str = "<payload>") -> DependencyGraph:
    if not isinstance(raw, dict) or not isinstance(raw.get("tasks"), list):
        raise ValueError(f"Task file {source} must contain a 'tasks' array")
    return DependencyGraph.from_nodes(_parse_task(item, source) for item in raw["tasks"])


def _parse_task(item: Any, source: str) -> TaskNode:
    if not isinstance(item, dict):
        raise ValueError(f"Task entries in {source} must be objects")
    task_id = item.get("id")
    if not isinstance(task_id, str) or not task_id.strip():
        raise ValueError(f"Every task in {source} needs a non-empty string 'id'")
    confidence = item.get("confidence")
    if confidence is not None:
        try:
            confidence = float(confidence)
        except (TypeError, ValueError) as error:
            raise ValueError(f"Task {task_id!r} confidence must be a number") from error
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Task {task_id!r} confidence must be within [0, 1]")
    return TaskNode(
        id=task_id,
        title=str(item.get("title") or task_id),
        description=str(item.get("description") or ""),
        depends_on=_id_list(item, "depends_on", task_id),
        inferred_depends_on=_id_list(item, "inferred_depends_on", task_id),
        confidence=confidence,
        work_unit=str(item.get("work_unit") or DEFAULT_WORK_UNIT),
    )


def _id_list(item: dict[str, Any], key: str, task_id: str) -> tuple[str, ...]:
    value = item.get(key) or []
    if not isinstance(value, list) or not all(isinstance(entry, str) for entry in value):
        raise ValueError(f"Task {task_id!r} field {key!r} must be a list of task ids")
    return tuple(value)
