"""Execution planning over a dependency graph.

Two interchangeable policies share one contract: ``next_batch()`` returns the
story groups that may start now, ``mark_finished()`` reports a worker's
outcome, and ``is_finished`` / ``is_stalled`` tell the run loop when to stop.

``PhasePolicy`` walks precomputed phases with a barrier between them.
``ReadyQueuePolicy`` admits any task whose dependencies have completed, as
soon as a concurrency slot is free.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Protocol

from parallel_orchestrator.orchestrator.graph import DependencyGraph
from parallel_orchestrator.orchestrator.heuristics import group_confidence, is_low_confidence
from parallel_orchestrator.orchestrator.models import (
    EventType,
    OrchestratorEvent,
    Phase,
    SkippedTask,
    StoryGroup,
)

logger = logging.getLogger(__name__)

EventSink = Callable[[OrchestratorEvent], None]


class GraphCycleError(ValueError):
    """Phase planning found tasks that can never have their dependencies met."""

    def __init__(self, task_ids: Iterable[str]) -> None:
        self.task_ids = tuple(task_ids)
        super().__init__(
            "Dependency cycle detected among tasks: " + ", ".join(self.task_ids),
        )


class SchedulingPolicy(Protocol):
    def next_batch(self) -> list[StoryGroup]: ...

    def mark_finished(self, group: StoryGroup, *, success: bool) -> None: ...

    def drain_skipped(self) -> list[SkippedTask]: ...

    @property
    def is_finished(self) -> bool: ...

    @property
    def is_stalled(self) -> bool: ...

    @property
    def pending_task_ids(self) -> list[str]: ...

    @property
    def total_phases(self) -> int: ...


def compute_levels(graph: DependencyGraph) -> dict[str, int]:
    """Longest-path depth of every task; raises on a cycle."""

    remaining = {node.id: len(node.dependencies) for node in graph}
    levels: dict[str, int] = {}
    frontier = [task_id for task_id, count in remaining.items() if count == 0]
    for task_id in frontier:
        levels[task_id] = 0
    while frontier:
        next_frontier: list[str] = []
        for task_id in frontier:
            for dependent in graph.dependents_of(task_id):
                levels[dependent] = max(levels.get(dependent, 0), levels[task_id] + 1)
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    next_frontier.append(dependent)
        frontier = next_frontier
    unresolved = [task_id for task_id, count in remaining.items() if count > 0]
    if unresolved:
        raise GraphCycleError(unresolved)
    return levels


def split_story_groups(task_ids: list[str], max_workers: int = 0) -> list[StoryGroup]:
    """One group per task when unbounded, else at most ``max_workers`` contiguous groups."""

    if not task_ids:
        return []
    if max_workers <= 0 or max_workers >= len(task_ids):
        return [StoryGroup((task_id,)) for task_id in task_ids]
    size, extra = divmod(len(task_ids), max_workers)
    groups: list[StoryGroup] = []
    start = 0
    for index in range(max_workers):
        end = start + size + (1 if index < extra else 0)
        groups.append(StoryGroup(tuple(task_ids[start:end])))
        start = end
    return groups


def plan_phases(
    graph: DependencyGraph,
    *,
    max_workers: int = 0,
    low_confidence_threshold: float = 0.5,
) -> list[Phase]:
    """Partition the graph into ordered phases.

    Tasks are layered by longest dependency path, keeping input order inside
    a layer. A task with neither dependencies nor dependents gets a phase of
    its own after the layered ones. A phase runs sequentially when it has a
    single group or any member looks unsafe to parallelize.
    """

    levels = compute_levels(graph)
    layers: dict[int, list[str]] = {}
    isolated: list[str] = []
    for task_id in graph.task_ids:
        if graph.is_isolated(task_id):
            isolated.append(task_id)
        else:
            layers.setdefault(levels[task_id], []).append(task_id)

    buckets = [layers[level] for level in sorted(layers)] + [[task_id] for task_id in isolated]
    phases: list[Phase] = []
    for index, task_ids in enumerate(buckets, start=1):
        groups = split_story_groups(task_ids, max_workers)
        confidences = [graph.get(task_id).parallelism_confidence for task_id in task_ids]
        risky = any(is_low_confidence(value, low_confidence_threshold) for value in confidences)
        phases.append(
            Phase(
                name=f"Phase {index}",
                story_groups=groups,
                parallel=len(groups) > 1 and not risky,
                confidence=group_confidence(confidences),
            ),
        )
    return phases


class _FailureTracker:
    """Cascades failures to every pending task that transitively depends on them."""

    def __init__(self, graph: DependencyGraph, failed: Iterable[str]) -> None:
        self.graph = graph
        self.failed: dict[str, str] = {task_id: "failed" for task_id in failed}
        self._skipped: list[SkippedTask] = []

    def fail(self, task_id: str, reason: str) -> None:
        self.failed.setdefault(task_id, reason)

    def blocking_dependency(self, task_id: str) -> str | None:
        return next(
            (dep for dep in self.graph.dependencies_of(task_id) if dep in self.failed),
            None,
        )

    def skip(self, task_id: str, dependency: str) -> None:
        reason = f"dependency {dependency} failed"
        self.failed[task_id] = reason
        self._skipped.append(SkippedTask(task_id=task_id, reason=reason))
        logger.info("Skipping task %s: %s", task_id, reason)

    def drain(self) -> list[SkippedTask]:
        skipped, self._skipped = self._skipped, []
        return skipped


class ReadyQueuePolicy:
    """Admit every dependency-satisfied task up to the concurrency limit."""

    def __init__(
        self,
        graph: DependencyGraph,
        *,
        max_workers: int = 0,
        completed: Iterable[str] = (),
        failed: Iterable[str] = (),
    ) -> None:
        if max_workers < 0:
            raise ValueError("max_workers must be >= 0")
        self.graph = graph
        self.max_workers = max_workers
        self.completed: set[str] = set(completed)
        self._failures = _FailureTracker(graph, failed)
        self.in_flight: set[str] = set()
        self.pending: dict[str, None] = dict.fromkeys(
            task_id
            for task_id in graph.task_ids
            if task_id not in self.completed and task_id not in self._failures.failed
        )

    @property
    def failed(self) -> dict[str, str]:
        return self._failures.failed

    @property
    def total_phases(self) -> int:
        return 0

    @property
    def pending_task_ids(self) -> list[str]:
        return list(self.pending)

    def ready_task_ids(self) -> list[str]:
        return [
            task_id
            for task_id in self.pending
            if all(dep in self.completed for dep in self.graph.dependencies_of(task_id))
        ]

    def next_batch(self) -> list[StoryGroup]:
        self._cascade_failures()
        ready = self.ready_task_ids()
        if self.max_workers:
            ready = ready[: max(0, self.max_workers - len(self.in_flight))]
        for task_id in ready:
            del self.pending[task_id]
            self.in_flight.add(task_id)
        return [StoryGroup((task_id,)) for task_id in ready]

    def mark_finished(self, group: StoryGroup, *, success: bool) -> None:
        for task_id in group.task_ids:
            self.in_flight.discard(task_id)
            self.pending.pop(task_id, None)
            if success:
                self.completed.add(task_id)
            else:
                self._failures.fail(task_id, "failed")

    def drain_skipped(self) -> list[SkippedTask]:
        self._cascade_failures()
        return self._failures.drain()

    @property
    def is_finished(self) -> bool:
        return not self.pending and not self.in_flight

    @property
    def is_stalled(self) -> bool:
        self._cascade_failures()
        return bool(self.pending) and not self.in_flight and not self.ready_task_ids()

    def _cascade_failures(self) -> None:
        # Pending order is topological for acyclic input, so one pass reaches
        # transitive dependents; repeat until nothing changes to cover the rest.
        changed = True
        while changed:
            changed = False
            for task_id in list(self.pending):
                blocker = self._failures.blocking_dependency(task_id)
                if blocker is not None:
                    del self.pending[task_id]
                    self._failures.skip(task_id, blocker)
                    changed = True


class PhasePolicy:
    """Run precomputed phases in order with a barrier between them.

    ``on_event`` receives ``phase:started`` right before the first group of a
    phase is handed out and ``phase:completed`` once its last group finishes.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        phases: list[Phase],
        *,
        completed: Iterable[str] = (),
        failed: Iterable[str] = (),
        on_event: EventSink | None = None,
    ) -> None:
        self.graph = graph
        self.phases = phases
        self.completed: set[str] = set(completed)
        self._failures = _FailureTracker(graph, failed)
        self._on_event = on_event
        self.phase_index = -1
        self._queue: list[StoryGroup] = []
        self._in_flight: set[StoryGroup] = set()
        self._parallel = False

    @property
    def failed(self) -> dict[str, str]:
        return self._failures.failed

    @property
    def total_phases(self) -> int:
        return len(self.phases)

    @property
    def current_phase(self) -> Phase | None:
        if 0 <= self.phase_index < len(self.phases):
            return self.phases[self.phase_index]
        return None

    @property
    def pending_task_ids(self) -> list[str]:
        queued = [task_id for group in self._queue for task_id in group.task_ids]
        later = [
            task_id
            for phase in self.phases[self.phase_index + 1 :]
            for task_id in phase.task_ids
            if task_id not in self.completed and task_id not in self.failed
        ]
        return queued + later

    def next_batch(self) -> list[StoryGroup]:
        if not self._queue and not self._in_flight and not self._advance():
            return []
        if self._parallel:
            batch, self._queue = self._queue, []
        elif self._in_flight or not self._queue:
            return []
        else:
            batch = [self._queue.pop(0)]
        self._in_flight.update(batch)
        return batch

    def mark_finished(self, group: StoryGroup, *, success: bool) -> None:
        self._in_flight.discard(group)
        for task_id in group.task_ids:
            if success:
                self.completed.add(task_id)
            else:
                self._failures.fail(task_id, "failed")
        if not success and not self._parallel:
            self._queue = self._filter_groups(self._queue)
        if not self._queue and not self._in_flight:
            self._emit_phase_completed()

    def drain_skipped(self) -> list[SkippedTask]:
        return self._failures.drain()

    @property
    def is_finished(self) -> bool:
        return (
            not self._queue
            and not self._in_flight
            and not self.pending_task_ids
        )

    @property
    def is_stalled(self) -> bool:
        return False

    def _advance(self) -> bool:
        """Move to the next phase that still has work; False when none is left."""

        while self.phase_index + 1 < len(self.phases):
            self.phase_index += 1
            phase = self.phases[self.phase_index]
            groups = self._filter_groups(phase.story_groups)
            if not groups:
                continue
            self._queue = groups
            self._parallel = phase.parallel and len(groups) > 1
            self._emit(
                OrchestratorEvent(
                    type=EventType.PHASE_STARTED,
                    phase_name=phase.name,
                    phase_index=self.phase_index,
                    total_phases=len(self.phases),
                ),
            )
            return True
        return False

    def _filter_groups(self, groups: list[StoryGroup]) -> list[StoryGroup]:
        """Drop finished tasks and skip tasks whose dependencies failed."""

        kept: list[StoryGroup] = []
        for group in groups:
            task_ids: list[str] = []
            for task_id in group.task_ids:
                if task_id in self.completed or task_id in self.failed:
                    continue
                blocker = self._failures.blocking_dependency(task_id)
                if blocker is not None:
                    self._failures.skip(task_id, blocker)
                    continue
                task_ids.append(task_id)
            if task_ids:
                kept.append(StoryGroup(tuple(task_ids)))
        return kept

    def _emit_phase_completed(self) -> None:
        phase = self.current_phase
        if phase is None:
            return
        self._emit(
            OrchestratorEvent(
                type=EventType.PHASE_COMPLETED,
                phase_name=phase.name,
                phase_index=self.phase_index,
                total_phases=len(self.phases),
            ),
        )

    def _emit(self, event: OrchestratorEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)


def build_policy(  # noqa: PLR0913
    name: str,
    graph: DependencyGraph,
    *,
    max_workers: int = 0,
    low_confidence_threshold: float = 0.5,
    completed: Iterable[str] = (),
    failed: Iterable[str] = (),
    on_event: EventSink | None = None,
) -> SchedulingPolicy:
    if name == "ready":
        return ReadyQueuePolicy(graph, max_workers=max_workers, completed=completed, failed=failed)
    if name == "phased":
        phases = plan_phases(
            graph,
            max_workers=max_workers,
            low_confidence_threshold=low_confidence_threshold,
        )
        return PhasePolicy(graph, phases, completed=completed, failed=failed, on_event=on_event)
    raise ValueError(f"Unknown scheduling policy: {name!r}")
