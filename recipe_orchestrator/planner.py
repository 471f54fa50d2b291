"""Dependency graph construction and phase planning.

The graph helpers work on plain ``{node: dependencies}`` mappings so the same
cycle detection and batching serve both step graphs (within a recipe) and
recipe graphs (within a group).
"""

import logging
from collections.abc import Iterable
from collections.abc import Mapping

from .errors import CircularDependencyError
from .errors import RecipeError
from .errors import ValidationError
from .models import Step
from .results import ExecutionPhase
from .results import ExecutionPlan
from .results import StepDependencyNode

logger = logging.getLogger(__name__)


def find_cycle(graph: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return the first cycle found as a closed path (``[A, B, A]``), or None.

    Nodes and edges are visited in sorted order so the reported cycle is
    deterministic. Edges to nodes outside the graph are ignored.
    """
    visited: set[str] = set()
    visiting: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        path.append(node)
        for dep in sorted(graph.get(node, ())):
            if dep not in graph:
                continue
            if dep in visiting:
                return path[path.index(dep) :] + [dep]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
        visiting.discard(node)
        visited.add(node)
        path.pop()
        return None

    for node in sorted(graph):
        if node not in visited:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def detect_cycle(graph: Mapping[str, Iterable[str]]) -> None:
    """Raise CircularDependencyError if the graph has a cycle."""
    cycle = find_cycle(graph)
    if cycle:
        raise CircularDependencyError(cycle)


def compute_priorities(graph: Mapping[str, Iterable[str]]) -> dict[str, int]:
    """Priority of each node: 0 for roots, else 1 + max(priority of dependencies).

    The graph must be acyclic.
    """
    priorities: dict[str, int] = {}

    def priority(node: str) -> int:
        if node not in priorities:
            deps = [d for d in graph.get(node, ()) if d in graph]
            priorities[node] = 1 + max(priority(d) for d in deps) if deps else 0
        return priorities[node]

    for node in graph:
        priority(node)
    return priorities


def plan_batches(graph: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Group nodes into batches whose dependencies all sit in earlier batches.

    Each batch is sorted by name.

    Raises:
        RecipeError: If nodes remain that can never become ready
    """
    remaining = {node: {d for d in deps if d in graph} for node, deps in graph.items()}
    assigned: set[str] = set()
    batches: list[list[str]] = []

    while remaining:
        ready = sorted(node for node, deps in remaining.items() if deps <= assigned)
        if not ready:
            raise RecipeError(f"Unable to resolve execution order for: {', '.join(sorted(remaining))}")
        batches.append(ready)
        assigned.update(ready)
        for node in ready:
            del remaining[node]

    return batches


def build_step_graph(steps: list[Step]) -> dict[str, StepDependencyNode]:
    """Build one dependency node per step from ``depends_on``."""
    nodes = {step.name: StepDependencyNode(step_name=step.name, parallelizable=step.parallel) for step in steps}

    errors = []
    for step in steps:
        for dep in step.depends_on:
            if dep not in nodes:
                errors.append(f"Step '{step.name}': depends on unknown step '{dep}'")
                continue
            nodes[step.name].dependencies.add(dep)
            nodes[dep].dependents.add(step.name)
    if errors:
        raise ValidationError(errors)

    return nodes


def create_execution_plan(steps: list[Step], enable_parallel: bool = True) -> ExecutionPlan:
    """Plan the phases for a list of steps.

    Raises:
        CircularDependencyError: If the steps depend on each other in a cycle
    """
    nodes = build_step_graph(steps)
    graph = {name: node.dependencies for name, node in nodes.items()}
    detect_cycle(graph)

    for name, value in compute_priorities(graph).items():
        nodes[name].priority = value

    phases = []
    for batch in plan_batches(graph):
        parallel = enable_parallel and len(batch) > 1 and all(nodes[name].parallelizable for name in batch)
        phases.append(ExecutionPhase(steps=batch, parallel=parallel))

    logger.debug(f"Planned {len(steps)} steps into {len(phases)} phases: {[p.steps for p in phases]}")
    return ExecutionPlan(phases=phases, nodes=nodes)
