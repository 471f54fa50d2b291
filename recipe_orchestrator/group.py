"""Group executor: run a directory of sibling recipes wired together by provides.

A group is a directory tree. Every directory holding a recipe file is one
member; directories without one are searched further. Members are ordered by
an implicit graph: a recipe depends on the sibling that provides one of its
required inputs. Members in the same batch run concurrently, and each batch
sees the values provided by the batches before it.
"""

import asyncio
import datetime
import logging
import uuid
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any

from .errors import CircularDependencyError
from .errors import RecipeError
from .errors import SourceError
from .errors import ValidationError
from .events import EventType
from .models import RecipeConfig
from .planner import find_cycle
from .planner import plan_batches
from .results import ExecutionStatus
from .results import RecipeExecutionResult
from .sources import find_recipe_file

if TYPE_CHECKING:
    from .engine import RecipeEngine
    from .engine import RecipeExecutionOptions

logger = logging.getLogger(__name__)


@dataclass
class GroupRecipeEntry:
    """One member of a group. ``name`` is its directory relative to the group root."""

    name: str
    recipe_path: Path
    config: RecipeConfig | None = None


@dataclass
class RecipeGroup:
    directory: Path
    recipes: list[GroupRecipeEntry] = field(default_factory=list)

    def get(self, name: str) -> GroupRecipeEntry | None:
        for entry in self.recipes:
            if entry.name == name:
                return entry
        return None


@dataclass
class GroupDependencyGraph:
    """Recipe-level graph: ``edges[name]`` holds the members ``name`` waits for."""

    edges: dict[str, set[str]] = field(default_factory=dict)
    provides_map: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


@dataclass
class GroupExecutionResult:
    success: bool
    recipe_results: list[tuple[str, RecipeExecutionResult]] = field(default_factory=list)
    provided_values: dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0
    errors: list[str] = field(default_factory=list)
    external_params: list[str] = field(default_factory=list)
    required_by: dict[str, list[str]] = field(default_factory=dict)
    batches: list[list[str]] = field(default_factory=list)

    def get_result(self, name: str) -> RecipeExecutionResult | None:
        for recipe_name, result in self.recipe_results:
            if recipe_name == name:
                return result
        return None


class GroupExecutor:
    def __init__(self, engine: "RecipeEngine"):
        self.engine = engine

    def discover_group(self, directory: Path) -> RecipeGroup:
        """
        Find the member recipes under ``directory``.

        Raises:
            SourceError: If ``directory`` is not a directory
        """
        root = Path(directory).resolve()
        if not root.is_dir():
            raise SourceError(f"Recipe group directory not found: {directory}", source=str(directory))

        entries: list[GroupRecipeEntry] = []

        def scan(current: Path) -> None:
            for child in sorted(p for p in current.iterdir() if p.is_dir()):
                recipe_file = find_recipe_file(child)
                if recipe_file is not None:
                    entries.append(GroupRecipeEntry(child.relative_to(root).as_posix(), recipe_file))
                else:
                    scan(child)

        scan(root)
        logger.debug(f"Discovered {len(entries)} recipe(s) in group {root}")
        return RecipeGroup(directory=root, recipes=entries)

    async def load_group_configs(self, group: RecipeGroup) -> RecipeGroup:
        """Load every member's recipe through the engine's loader (and cache)."""
        for entry in group.recipes:
            if entry.config is None:
                loaded = await self.engine.load_recipe(entry.recipe_path)
                entry.config = loaded.recipe
        return group

    def build_dependency_graph(self, entries: list[GroupRecipeEntry]) -> GroupDependencyGraph:
        """
        Build the recipe-level graph from ``provides`` and required inputs.

        Two members providing the same name and dependency cycles are reported
        in ``errors`` rather than raised.
        """
        graph = GroupDependencyGraph(edges={entry.name: set() for entry in entries})

        for entry in entries:
            for provided in self._config(entry).provided_names:
                owner = graph.provides_map.get(provided)
                if owner is not None and owner != entry.name:
                    graph.errors.append(f"Variable '{provided}' is provided by both '{owner}' and '{entry.name}'")
                    continue
                graph.provides_map[provided] = entry.name

        for entry in entries:
            for required in self._config(entry).required_inputs():
                provider = graph.provides_map.get(required)
                if provider is not None and provider != entry.name:
                    graph.edges[entry.name].add(provider)

        cycle = find_cycle(graph.edges)
        if cycle:
            graph.errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")
        return graph

    def topological_sort(self, edges: dict[str, set[str]]) -> list[list[str]]:
        """Group members into batches that can run concurrently."""
        return plan_batches(edges)

    def compute_external_params(
        self, entries: list[GroupRecipeEntry], provides_map: dict[str, str]
    ) -> dict[str, list[str]]:
        """Required inputs no member provides, mapped to the members that need them."""
        required_by: dict[str, list[str]] = {}
        for entry in entries:
            for name in self._config(entry).required_inputs():
                if name not in provides_map:
                    required_by.setdefault(name, []).append(entry.name)
        return {name: required_by[name] for name in sorted(required_by)}

    async def execute_group(
        self,
        group: RecipeGroup,
        base_vars: dict[str, Any] | None = None,
        options: "RecipeExecutionOptions | None" = None,
    ) -> GroupExecutionResult:
        """
        Run every member of ``group`` in dependency order.

        Each recipe gets the accumulated pool (``base_vars`` plus everything
        provided by earlier batches) with ``options.variables`` on top. A batch
        with failures stops later batches unless ``options.continue_on_error``.

        Raises:
            ValidationError: Duplicate providers in the group
            CircularDependencyError: Members depend on each other in a cycle
        """
        from .engine import RecipeExecutionOptions

        options = options or RecipeExecutionOptions()
        started = datetime.datetime.now()
        group_id = f"group_{uuid.uuid4().hex[:12]}"

        await self.load_group_configs(group)
        graph = self.build_dependency_graph(group.recipes)
        cycle = find_cycle(graph.edges)
        if cycle:
            raise CircularDependencyError(cycle)
        if graph.errors:
            raise ValidationError(graph.errors)

        batches = self.topological_sort(graph.edges)
        required_by = self.compute_external_params(group.recipes, graph.provides_map)
        result = GroupExecutionResult(
            success=True,
            external_params=list(required_by),
            required_by=required_by,
            batches=batches,
        )

        accumulated = dict(base_vars or {})
        logger.info(f"Executing recipe group {group.directory} ({len(group.recipes)} recipes, {len(batches)} batches)")
        self.events.emit(EventType.GROUP_STARTED, group_id, directory=str(group.directory), batches=batches)

        for index, batch in enumerate(batches):
            self.events.emit(EventType.GROUP_BATCH, group_id, batch=index, recipes=batch)
            snapshot = {**accumulated, **options.variables}
            batch_results = await asyncio.gather(
                *(self._run_member(group.get(name), snapshot, options, group_id) for name in batch)
            )

            batch_failed = False
            for name, recipe_result in zip(batch, batch_results):
                result.recipe_results.append((name, recipe_result))
                accumulated.update(recipe_result.provided_values)
                if not recipe_result.success:
                    batch_failed = True
                    result.errors.extend(f"{name}: {error}" for error in recipe_result.errors or ["failed"])

            if batch_failed and not options.continue_on_error:
                skipped = [name for later in batches[index + 1 :] for name in later]
                if skipped:
                    logger.warning(f"Recipe group stopped after batch {index}; skipped: {', '.join(skipped)}")
                break

        result.success = not result.errors
        result.provided_values = accumulated
        result.duration = (datetime.datetime.now() - started).total_seconds()
        self.events.emit(EventType.GROUP_COMPLETED, group_id, success=result.success, errors=result.errors)
        logger.info(f"Recipe group {group.directory} {'completed' if result.success else 'failed'}")
        return result

    async def run_group(
        self,
        directory: Path,
        base_vars: dict[str, Any] | None = None,
        options: "RecipeExecutionOptions | None" = None,
    ) -> GroupExecutionResult:
        """Discover and execute the group rooted at ``directory``."""
        return await self.execute_group(self.discover_group(directory), base_vars, options)

    @property
    def events(self):
        return self.engine.events

    async def _run_member(
        self,
        entry: GroupRecipeEntry,
        variables: dict[str, Any],
        options: "RecipeExecutionOptions",
        group_id: str,
    ) -> RecipeExecutionResult:
        config = self._config(entry)
        self.events.emit(EventType.RECIPE_STARTED, group_id, recipe=entry.name)
        member_options = replace(options, variables=dict(variables), execution_id=None)
        try:
            recipe_result = await self.engine.execute_recipe(config, member_options)
        except RecipeError as e:
            logger.error(f"Recipe '{entry.name}' in group failed before execution: {e}")
            recipe_result = self._failed_result(config, variables, e)
        except Exception as e:
            logger.error(f"Recipe '{entry.name}' in group raised an unexpected error: {e}", exc_info=True)
            recipe_result = self._failed_result(config, variables, e)

        if recipe_result.status == ExecutionStatus.CANCELLED:
            event = EventType.RECIPE_CANCELLED
        elif recipe_result.success:
            event = EventType.RECIPE_COMPLETED
        else:
            event = EventType.RECIPE_FAILED
        self.events.emit(event, group_id, recipe=entry.name, execution=recipe_result.execution_id)
        return recipe_result

    @staticmethod
    def _failed_result(config: RecipeConfig, variables: dict[str, Any], error: Exception) -> RecipeExecutionResult:
        return RecipeExecutionResult(
            execution_id="",
            recipe_name=config.name,
            success=False,
            status=ExecutionStatus.FAILED,
            errors=[str(error) or type(error).__name__],
            variables=dict(variables),
        )

    @staticmethod
    def _config(entry: GroupRecipeEntry) -> RecipeConfig:
        if entry.config is None:
            raise ValueError(f"Recipe '{entry.name}' has not been loaded")
        return entry.config
