"""Recipe engine: load, validate, resolve variables, execute and track recipes."""

import asyncio
import datetime
import logging
import uuid
from dataclasses import dataclass
from dataclasses import field
from dataclasses import fields
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .cache import CacheConfig
from .cache import RecipeCache
from .context import StepContext
from .errors import ExecutionNotFoundError
from .errors import RecipeError
from .errors import RecursionLimitError
from .errors import ValidationError
from .events import EventBus
from .events import EventType
from .executor import StepExecutionOptions
from .executor import StepExecutor
from .executor import StepExecutorConfig
from .executor import collect_variables
from .executor import summarize_results
from .loader import LoadResult
from .loader import RecipeLoader
from .models import RecipeConfig
from .models import normalize_keys
from .planner import create_execution_plan
from .results import ExecutionStatus
from .results import RecipeExecutionResult
from .results import StepResult
from .sources import DefaultSourceFetcher
from .sources import SecurityPolicy
from .sources import SourceFetcher
from .sources import normalize_source
from .tools import register_builtin_tools
from .tools.registry import ToolRegistry
from .tools.registry import ToolRegistryConfig
from .validator import ValidationResult
from .validator import validate_recipe
from .variables import Prompter
from .variables import VariableResolver

logger = logging.getLogger(__name__)


def _section(section_cls: type, data: Any, label: str) -> Any:
    """Build a config dataclass from a mapping, rejecting unknown keys."""
    if data is None:
        return section_cls()
    if isinstance(data, section_cls):
        return data
    if not isinstance(data, dict):
        raise ValidationError([f"{label} must be a mapping"])
    values = normalize_keys(data)
    known = {f.name for f in fields(section_cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValidationError([f"{label}: unknown setting(s): {', '.join(unknown)}"])
    return section_cls(**values)


@dataclass
class EngineConfig:
    """Engine-wide configuration. Each engine owns its own cache and tool pool."""

    working_dir: Path = field(default_factory=Path.cwd)
    package_dir: Path | None = None  # Where package sources live; default <working_dir>/.recipes
    fetch_timeout: float = 60.0
    max_recipe_depth: int = 5  # Nested sub-recipe limit, configurable 1-20
    execution_history: int = 100  # Finished executions kept for get_execution / list_executions
    executor: StepExecutorConfig = field(default_factory=StepExecutorConfig)
    tools: ToolRegistryConfig = field(default_factory=ToolRegistryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    security: SecurityPolicy = field(default_factory=SecurityPolicy)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EngineConfig":
        """Build from a mapping with camelCase or snake_case keys.

        Raises:
            ValidationError: On unknown keys or invalid values
        """
        values = normalize_keys(data or {})
        sections = {
            "executor": (StepExecutorConfig, values.pop("executor", values.pop("step_executor", None))),
            "tools": (ToolRegistryConfig, values.pop("tools", values.pop("tool_registry", None))),
            "cache": (CacheConfig, values.pop("cache", None)),
            "security": (SecurityPolicy, values.pop("security", None)),
        }

        top_level = {f.name for f in fields(cls)} - set(sections)
        unknown = sorted(set(values) - top_level)
        if unknown:
            raise ValidationError([f"Unknown engine setting(s): {', '.join(unknown)}"])

        kwargs: dict[str, Any] = {
            name: _section(section_cls, raw, name) for name, (section_cls, raw) in sections.items()
        }
        if "working_dir" in values:
            kwargs["working_dir"] = Path(values["working_dir"])
        if values.get("package_dir") is not None:
            kwargs["package_dir"] = Path(values["package_dir"])
        for key in ("fetch_timeout", "max_recipe_depth", "execution_history"):
            if key in values:
                kwargs[key] = values[key]

        config = cls(**kwargs)
        errors = config.validate()
        if errors:
            raise ValidationError(errors)
        return config

    def validate(self) -> list[str]:
        errors = []
        if self.fetch_timeout <= 0:
            errors.append(f"fetch_timeout must be positive, got {self.fetch_timeout}")
        if not 1 <= self.max_recipe_depth <= 20:
            errors.append(f"max_recipe_depth must be 1-20, got {self.max_recipe_depth}")
        if self.execution_history < 0:
            errors.append(f"execution_history must be >= 0, got {self.execution_history}")
        errors.extend(self.executor.validate())
        errors.extend(self.tools.validate())
        errors.extend(self.cache.validate())
        errors.extend(self.security.validate())
        return errors


def load_engine_config(path: Path) -> EngineConfig:
    """Load engine configuration from a YAML file."""
    if not path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValidationError([f"Invalid YAML in {path}: {e}"]) from e

    if data is not None and not isinstance(data, dict):
        raise ValidationError([f"Engine config {path} must be a mapping"])
    config = EngineConfig.from_dict(data)
    if not config.working_dir.is_absolute():
        config.working_dir = (path.parent / config.working_dir).resolve()
    return config


@dataclass
class RecipeExecutionOptions:
    variables: dict[str, Any] = field(default_factory=dict)
    skip_prompts: bool = False
    dry_run: bool = False
    force: bool = False
    working_dir: Path | None = None
    retries: int | None = None
    timeout: float | None = None
    continue_on_error: bool | None = None
    max_concurrency: int | None = None
    enable_parallel: bool | None = None
    execution_id: str | None = None


@dataclass
class ExecutionRecord:
    """Bookkeeping for one tracked execution."""

    execution_id: str
    recipe_name: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    completed_at: datetime.datetime | None = None
    parent_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


class RecipeEngine:
    """Loads and runs recipes. Owns its cache, tool pool and executor."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        registry: ToolRegistry | None = None,
        fetcher: SourceFetcher | None = None,
        prompter: Prompter | None = None,
        events: EventBus | None = None,
    ):
        self.config = config or EngineConfig()
        errors = self.config.validate()
        if errors:
            raise ValidationError(errors)

        self.events = events or EventBus()
        self.cache = RecipeCache(self.config.cache)
        if registry is None:
            registry = ToolRegistry(self.config.tools)
            register_builtin_tools(registry)
        self.registry = registry
        self.prompter = prompter
        self.resolver = VariableResolver(prompter)
        self.loader = RecipeLoader(
            fetcher=fetcher
            or DefaultSourceFetcher(
                self.config.package_dir or self.config.working_dir / ".recipes",
                self.config.fetch_timeout,
            ),
            cache=self.cache,
            policy=self.config.security,
            working_dir=self.config.working_dir,
        )
        self.executor = StepExecutor(self.registry, self.config.executor, self.events)
        self._executions: dict[str, ExecutionRecord] = {}

    async def load_recipe(self, source: Any, base_dir: Path | None = None) -> LoadResult:
        return await self.loader.load(source, base_dir)

    async def validate_recipe(self, source: Any) -> ValidationResult:
        """Validate a recipe source without executing it.

        Source and parse problems are reported as validation errors.
        """
        if isinstance(source, RecipeConfig):
            return validate_recipe(source)
        try:
            loaded = await self.loader.load(source, validate=False)
        except RecipeError as e:
            return ValidationResult(is_valid=False, errors=[str(e)])
        return loaded.validation

    async def execute_recipe(
        self,
        source: Any,
        options: RecipeExecutionOptions | None = None,
    ) -> RecipeExecutionResult:
        """
        Load and run a recipe.

        Args:
            source: Path, URL, package name, inline YAML, RecipeSource or RecipeConfig
            options: Variables, prompting and execution overrides

        Returns:
            Aggregated result; step failures are reported here, never raised

        Raises:
            SourceError, ParseError, ValidationError, RecipeDependencyError,
            CircularDependencyError: Pre-flight problems, before any step runs
        """
        options = options or RecipeExecutionOptions()
        if isinstance(source, RecipeConfig):
            return await self.run_recipe(source, options)
        loaded = await self.load_recipe(source)
        return await self.run_recipe(loaded.recipe, options, warnings=loaded.warnings)

    async def run_recipe(
        self,
        recipe: RecipeConfig,
        options: RecipeExecutionOptions,
        recipe_stack: list[str] | None = None,
        parent_id: str | None = None,
        warnings: list[str] | None = None,
    ) -> RecipeExecutionResult:
        """Run an already loaded recipe."""
        execution_id = options.execution_id or f"exec_{uuid.uuid4().hex[:12]}"
        record = ExecutionRecord(execution_id=execution_id, recipe_name=recipe.name, parent_id=parent_id)
        self._executions[execution_id] = record
        warnings = list(warnings or [])

        try:
            validation = validate_recipe(recipe)
            if not validation.is_valid:
                raise ValidationError(validation.errors)
            warnings.extend(w for w in validation.warnings if w not in warnings)
            variables = await self.resolver.resolve(recipe.variables, options.variables, options.skip_prompts)
            step_options = self._step_options(recipe, options)
            create_execution_plan(recipe.steps, enable_parallel=step_options.enable_parallel is not False)
        except BaseException:
            self._finish(record, ExecutionStatus.FAILED)
            raise

        if record.status == ExecutionStatus.CANCELLED:
            return self._build_result(record, recipe, [], variables, warnings, datetime.datetime.now())

        record.status = ExecutionStatus.RUNNING
        started = datetime.datetime.now()
        logger.info(f"Executing recipe '{recipe.name}' ({execution_id})")
        self.events.emit(EventType.EXECUTION_STARTED, execution_id, recipe=recipe.name, parent=parent_id)

        context = StepContext(
            execution_id=execution_id,
            variables=dict(variables),
            recipe=recipe,
            working_dir=self._working_dir(recipe, options),
            dry_run=options.dry_run,
            force=options.force,
            recipe_stack=[*(recipe_stack or []), recipe.name],
            executor=self.executor,
            engine=self,
            prompter=None if options.skip_prompts else self.prompter,
        )

        try:
            step_results = await self.executor.execute_steps(recipe.steps, context, step_options)
        except asyncio.CancelledError:
            self._finish(record, ExecutionStatus.CANCELLED)
            self.events.emit(EventType.EXECUTION_CANCELLED, execution_id, recipe=recipe.name)
            raise
        except BaseException:
            self._finish(record, ExecutionStatus.FAILED)
            self.events.emit(EventType.EXECUTION_FAILED, execution_id, recipe=recipe.name)
            raise

        result = self._build_result(record, recipe, step_results, variables, warnings, started)
        logger.info(
            f"Recipe '{recipe.name}' ({execution_id}) {result.status.value}: "
            f"{result.metadata['completed_steps']}/{result.metadata['total_steps']} steps completed"
        )
        return result

    async def execute_sub_recipe(
        self,
        source: str,
        variables: dict[str, Any],
        parent: StepContext,
        version: str | None = None,
    ) -> RecipeExecutionResult:
        """
        Run a recipe from inside a running step.

        Raises:
            RecursionLimitError: Nesting too deep, or the recipe is already running above
        """
        if len(parent.recipe_stack) > self.config.max_recipe_depth:
            raise RecursionLimitError(
                f"Recipe recursion depth {len(parent.recipe_stack)} exceeds limit {self.config.max_recipe_depth}",
                parent.recipe_stack,
            )

        descriptor = normalize_source(source, parent.recipe_dir)
        if version and descriptor.kind in ("package", "url"):
            descriptor = replace(descriptor, version=version)
        loaded = await self.loader.load(descriptor)

        if loaded.recipe.name in parent.recipe_stack:
            raise RecursionLimitError(
                f"Recipe '{loaded.recipe.name}' is already running", [*parent.recipe_stack, loaded.recipe.name]
            )

        options = RecipeExecutionOptions(
            variables=variables,
            skip_prompts=parent.prompter is None,
            dry_run=parent.dry_run,
            force=parent.force,
            working_dir=parent.working_dir,
        )
        return await self.run_recipe(
            loaded.recipe,
            options,
            recipe_stack=parent.recipe_stack,
            parent_id=parent.execution_id,
            warnings=loaded.warnings,
        )

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel a running execution and any sub-recipe executions it started.

        Returns False if the execution already finished.

        Raises:
            ExecutionNotFoundError: If the id is unknown
        """
        record = self._executions.get(execution_id)
        if record is None:
            raise ExecutionNotFoundError(execution_id)
        if not record.is_active:
            return False

        record.status = ExecutionStatus.CANCELLED
        # The parent is marked cancelled before its children
        await self.executor.cancel_execution(execution_id)
        for child in list(self._executions.values()):
            if child.parent_id == execution_id and child.is_active:
                await self.cancel_execution(child.execution_id)
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    async def cancel_all_executions(self) -> int:
        active = [r.execution_id for r in self._executions.values() if r.is_active and r.parent_id is None]
        for execution_id in active:
            await self.cancel_execution(execution_id)
        return len(active)

    def get_execution(self, execution_id: str) -> ExecutionRecord:
        record = self._executions.get(execution_id)
        if record is None:
            raise ExecutionNotFoundError(execution_id)
        return record

    def list_executions(self, active_only: bool = False) -> list[ExecutionRecord]:
        """Active executions plus the most recent finished ones, oldest first."""
        records = sorted(self._executions.values(), key=lambda r: r.started_at)
        return [r for r in records if r.is_active] if active_only else records

    async def cleanup(self) -> None:
        """Cancel everything and release the tool pool and recipe cache."""
        await self.cancel_all_executions()
        await self.registry.clear()
        self.cache.clear()

    def _step_options(self, recipe: RecipeConfig, options: RecipeExecutionOptions) -> StepExecutionOptions:
        settings = recipe.settings

        def pick(value: Any, fallback: Any) -> Any:
            return value if value is not None else fallback

        return StepExecutionOptions(
            retries=pick(options.retries, settings.retries),
            timeout=pick(options.timeout, settings.timeout),
            continue_on_error=pick(options.continue_on_error, settings.continue_on_error),
            max_concurrency=pick(options.max_concurrency, settings.max_parallel_steps),
            enable_parallel=options.enable_parallel,
        )

    def _working_dir(self, recipe: RecipeConfig, options: RecipeExecutionOptions) -> Path:
        if options.working_dir is not None:
            return options.working_dir
        if recipe.settings.working_dir:
            base = Path(recipe.source_path).parent if recipe.source_path else self.config.working_dir
            return (base / recipe.settings.working_dir).resolve()
        return self.config.working_dir

    def _build_result(
        self,
        record: ExecutionRecord,
        recipe: RecipeConfig,
        step_results: list[StepResult],
        variables: dict[str, Any],
        warnings: list[str],
        started: datetime.datetime,
    ) -> RecipeExecutionResult:
        summary = summarize_results(step_results)
        final_variables = collect_variables(variables, step_results)

        if record.status == ExecutionStatus.CANCELLED:
            status = ExecutionStatus.CANCELLED
        elif summary.failed or summary.cancelled:
            status = ExecutionStatus.FAILED
        else:
            status = ExecutionStatus.COMPLETED
        self._finish(record, status)

        provided_values = {}
        for provided in recipe.provides:
            if final_variables.get(provided.name) is not None:
                provided_values[provided.name] = final_variables[provided.name]
            else:
                warnings.append(f"Recipe '{recipe.name}' did not produce provided value '{provided.name}'")

        errors = list(summary.errors)
        if status == ExecutionStatus.CANCELLED:
            errors.append("Execution cancelled")

        event = {
            ExecutionStatus.COMPLETED: EventType.EXECUTION_COMPLETED,
            ExecutionStatus.FAILED: EventType.EXECUTION_FAILED,
            ExecutionStatus.CANCELLED: EventType.EXECUTION_CANCELLED,
        }[status]
        self.events.emit(event, record.execution_id, recipe=recipe.name, errors=errors)

        return RecipeExecutionResult(
            execution_id=record.execution_id,
            recipe_name=recipe.name,
            success=status == ExecutionStatus.COMPLETED,
            status=status,
            step_results=step_results,
            duration=(datetime.datetime.now() - started).total_seconds(),
            files_created=summary.files_created,
            files_modified=summary.files_modified,
            files_deleted=summary.files_deleted,
            errors=errors,
            warnings=warnings,
            variables=final_variables,
            provided_values=provided_values,
            metadata={
                "total_steps": summary.total,
                "completed_steps": summary.completed,
                "failed_steps": summary.failed,
                "skipped_steps": summary.skipped,
                "cancelled_steps": summary.cancelled,
                "parent_id": record.parent_id,
            },
        )

    def _finish(self, record: ExecutionRecord, status: ExecutionStatus) -> None:
        if record.status != ExecutionStatus.CANCELLED:
            record.status = status
        record.completed_at = datetime.datetime.now()
        self._prune_history()

    def _prune_history(self) -> None:
        """Drop the oldest finished records beyond ``config.execution_history``."""
        finished = sorted(
            (r for r in self._executions.values() if r.completed_at is not None), key=lambda r: r.completed_at
        )
        excess = len(finished) - self.config.execution_history
        for record in finished[: max(excess, 0)]:
            del self._executions[record.execution_id]
