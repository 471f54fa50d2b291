"""Step execution: phases, conditions, retries, tool dispatch and cancellation."""

import asyncio
import logging
import random
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from typing import Any

from .context import StepContext
from .errors import ExecutionCancelledError
from .errors import StepExecutionError
from .errors import ToolValidationError
from .errors import error_code
from .errors import is_retryable
from .events import EventBus
from .events import EventType
from .expression_evaluator import ExpressionError
from .expression_evaluator import evaluate_condition
from .interpolation import substitute_recursive
from .models import Step
from .planner import create_execution_plan
from .results import StepError
from .results import StepResult
from .results import StepStatus
from .tools.base import Tool
from .tools.base import ToolResult
from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class StepExecutorConfig:
    max_concurrency: int = 10
    default_timeout: float | None = None  # Seconds; None means no limit
    default_retries: int = 3  # Also caps step and option retries
    continue_on_error: bool = False
    enable_parallel_execution: bool = True
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.25  # Fraction of the delay, applied as +/-
    retry_min_delay: float = 0.1

    def validate(self) -> list[str]:
        errors = []
        if self.max_concurrency < 1:
            errors.append(f"executor.max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.default_timeout is not None and self.default_timeout <= 0:
            errors.append(f"executor.default_timeout must be positive, got {self.default_timeout}")
        if self.default_retries < 0:
            errors.append(f"executor.default_retries must be >= 0, got {self.default_retries}")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0 or self.retry_min_delay < 0:
            errors.append("executor retry delays must be >= 0")
        if self.retry_max_delay < self.retry_base_delay:
            errors.append(
                f"executor.retry_max_delay must be >= retry_base_delay, "
                f"got {self.retry_max_delay} < {self.retry_base_delay}"
            )
        if not 0 <= self.retry_jitter < 1:
            errors.append(f"executor.retry_jitter must be in [0, 1), got {self.retry_jitter}")
        return errors


@dataclass
class StepExecutionOptions:
    """Per-run overrides. None falls back to the executor config."""

    retries: int | None = None
    timeout: float | None = None
    continue_on_error: bool | None = None
    max_concurrency: int | None = None
    enable_parallel: bool | None = None


@dataclass
class ExecutionSummary:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def summarize_results(results: list[StepResult]) -> ExecutionSummary:
    """Counts, de-duplicated file sets (first-seen order) and error strings."""
    summary = ExecutionSummary(total=len(results))
    created: list[str] = []
    modified: list[str] = []
    deleted: list[str] = []
    for result in results:
        if result.status == StepStatus.COMPLETED:
            summary.completed += 1
        elif result.status == StepStatus.FAILED:
            summary.failed += 1
        elif result.status == StepStatus.SKIPPED:
            summary.skipped += 1
        elif result.status == StepStatus.CANCELLED:
            summary.cancelled += 1
        created.extend(result.files_created)
        modified.extend(result.files_modified)
        deleted.extend(result.files_deleted)
        if result.status == StepStatus.FAILED and result.error is not None:
            summary.errors.append(f"{result.step_name}: {result.error.message}")
    summary.files_created = _dedupe(created)
    summary.files_modified = _dedupe(modified)
    summary.files_deleted = _dedupe(deleted)
    return summary


def collect_variables(initial: dict[str, Any], results: list[StepResult]) -> dict[str, Any]:
    """Final scope: ``initial`` plus every step's exports, applied in phase-then-name order."""
    variables = dict(initial)
    for result in sorted(results, key=lambda r: (r.phase, r.step_name)):
        variables.update(result.variables)
    return variables


class StepExecutor:
    """Runs planned phases of steps against pooled tools."""

    def __init__(
        self,
        registry: ToolRegistry,
        config: StepExecutorConfig | None = None,
        events: EventBus | None = None,
    ):
        self.registry = registry
        self.config = config or StepExecutorConfig()
        self.events = events or EventBus()
        self._tasks: dict[str, set[asyncio.Task]] = {}
        self._active_tools: dict[str, set[Tool]] = {}
        self._cancelled: set[str] = set()

    async def execute_steps(
        self,
        steps: list[Step],
        context: StepContext,
        options: StepExecutionOptions | None = None,
    ) -> list[StepResult]:
        """
        Execute steps phase by phase.

        Phases run strictly in order. An untolerated failure lets the current
        phase finish and marks every later step cancelled. Variables exported
        by a phase's steps become visible from the next phase on.

        Args:
            steps: Steps of one recipe
            context: Execution context; its variables are the starting scope
            options: Per-run overrides

        Returns:
            One StepResult per step, ordered by phase then name

        Raises:
            CircularDependencyError: If the steps' dependencies form a cycle
        """
        options = options or StepExecutionOptions()
        execution_id = context.execution_id
        plan = create_execution_plan(steps, enable_parallel=self._parallel_enabled(options))

        by_name = {step.name: step for step in steps}
        results: dict[str, StepResult] = {}
        for index, phase in enumerate(plan.phases):
            for name in phase.steps:
                results[name] = StepResult(step_name=name, tool_kind=by_name[name].tool, phase=index)

        variables = dict(context.variables)
        semaphore = asyncio.Semaphore(options.max_concurrency or self.config.max_concurrency)
        stopped = False

        try:
            for index, phase in enumerate(plan.phases):
                if stopped or execution_id in self._cancelled:
                    for name in phase.steps:
                        self._mark_cancelled(results[name], execution_id, "execution stopped before this phase")
                    continue

                self.events.emit(
                    EventType.PHASE_STARTED, execution_id, phase=index, steps=phase.steps, parallel=phase.parallel
                )
                finished = {name: r for name, r in results.items() if r.status.is_terminal}
                phase_context = replace(context, variables=dict(variables), step_results=finished)

                if phase.parallel:
                    tasks = [
                        self._spawn(
                            execution_id,
                            self._run_pooled(semaphore, by_name[name], phase_context, options, results, by_name),
                        )
                        for name in phase.steps
                    ]
                    await asyncio.gather(*tasks, return_exceptions=True)
                else:
                    for name in phase.steps:
                        if execution_id in self._cancelled:
                            self._mark_cancelled(results[name], execution_id, "execution cancelled")
                            continue
                        task = self._spawn(
                            execution_id,
                            self._run_with_dependencies(by_name[name], phase_context, options, results, by_name),
                        )
                        await asyncio.gather(task, return_exceptions=True)

                for name in phase.steps:
                    if not results[name].status.is_terminal:
                        self._mark_cancelled(results[name], execution_id, "execution cancelled")
                    variables.update(results[name].variables)

                phase_failed = any(results[name].status == StepStatus.FAILED for name in phase.steps)
                self.events.emit(
                    EventType.PHASE_FAILED if phase_failed else EventType.PHASE_COMPLETED,
                    execution_id,
                    phase=index,
                    statuses={name: results[name].status.value for name in phase.steps},
                )

                untolerated = [
                    name
                    for name in phase.steps
                    if results[name].status == StepStatus.FAILED
                    and not self._tolerates_failure(by_name[name], options)
                ]
                if untolerated:
                    logger.info(
                        f"Stopping execution {execution_id} after phase {index}: {', '.join(untolerated)} failed"
                    )
                    stopped = True
        finally:
            self._tasks.pop(execution_id, None)
            self._active_tools.pop(execution_id, None)
            self._cancelled.discard(execution_id)

        return sorted(results.values(), key=lambda r: (r.phase, r.step_name))

    async def execute_step(
        self,
        step: Step,
        context: StepContext,
        options: StepExecutionOptions | None = None,
        phase: int = 0,
    ) -> StepResult:
        """Run a single step (condition, retries, dispatch) outside the phase loop."""
        result = StepResult(step_name=step.name, tool_kind=step.tool, phase=phase)
        await self._run_step(step, context, options or StepExecutionOptions(), result)
        return result

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel running steps of an execution and clean up their tool instances.

        Completed step results are kept. Returns True if anything was running.
        """
        self._cancelled.add(execution_id)
        tasks = [t for t in self._tasks.get(execution_id, set()) if not t.done()]
        for task in tasks:
            task.cancel()
        for tool in list(self._active_tools.get(execution_id, set())):
            try:
                await tool.cleanup()
            except Exception:
                logger.warning(f"Cleanup failed for {tool!r} while cancelling {execution_id}", exc_info=True)
        if tasks:
            logger.info(f"Cancelled {len(tasks)} running steps of execution {execution_id}")
        return bool(tasks)

    async def cancel_all(self) -> None:
        for execution_id in list(self._tasks):
            await self.cancel_execution(execution_id)

    def retry_delay(self, retry: int) -> float:
        """Backoff before retry number ``retry`` (1-based): exponential, capped, jittered, floored."""
        delay = min(self.config.retry_base_delay * 2 ** (retry - 1), self.config.retry_max_delay)
        delay += delay * self.config.retry_jitter * random.uniform(-1.0, 1.0)
        return max(delay, self.config.retry_min_delay)

    def retry_budget(self, step: Step, options: StepExecutionOptions) -> int:
        """Retries allowed after the first attempt: min of step, run and default settings."""
        candidates = [self.config.default_retries]
        if step.retries is not None:
            candidates.append(step.retries)
        if options.retries is not None:
            candidates.append(options.retries)
        return max(min(candidates), 0)

    def _parallel_enabled(self, options: StepExecutionOptions) -> bool:
        if options.enable_parallel is not None:
            return options.enable_parallel and self.config.enable_parallel_execution
        return self.config.enable_parallel_execution

    def _tolerates_failure(self, step: Step, options: StepExecutionOptions) -> bool:
        if step.continue_on_error is not None:
            return step.continue_on_error
        if options.continue_on_error is not None:
            return options.continue_on_error
        return self.config.continue_on_error

    def _spawn(self, execution_id: str, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        tasks = self._tasks.setdefault(execution_id, set())
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    async def _run_pooled(
        self,
        semaphore: asyncio.Semaphore,
        step: Step,
        context: StepContext,
        options: StepExecutionOptions,
        results: dict[str, StepResult],
        steps_by_name: dict[str, Step],
    ) -> None:
        async with semaphore:
            await self._run_with_dependencies(step, context, options, results, steps_by_name)

    async def _run_with_dependencies(
        self,
        step: Step,
        context: StepContext,
        options: StepExecutionOptions,
        results: dict[str, StepResult],
        steps_by_name: dict[str, Step],
    ) -> None:
        result = results[step.name]
        blocked = [
            dep
            for dep in step.depends_on
            if not self._dependency_satisfied(results[dep], steps_by_name[dep], options)
        ]
        if blocked:
            result.dependencies_satisfied = False
            result.finish(
                StepStatus.SKIPPED,
                StepError(f"dependencies not satisfied: {', '.join(blocked)}", "DEPENDENCY_FAILED"),
            )
            self.events.emit(EventType.STEP_SKIPPED, context.execution_id, step=step.name, reason="dependencies")
            return
        await self._run_step(step, context, options, result)

    def _dependency_satisfied(self, dep: StepResult, dep_step: Step, options: StepExecutionOptions) -> bool:
        if dep.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
            return True
        return dep.status == StepStatus.FAILED and self._tolerates_failure(dep_step, options)

    async def _run_step(
        self,
        step: Step,
        context: StepContext,
        options: StepExecutionOptions,
        result: StepResult,
    ) -> None:
        execution_id = context.execution_id

        try:
            scope = {**context.variables, **substitute_recursive(step.variables, context.variables)}
        except ValueError as e:
            result.start()
            result.finish(StepStatus.FAILED, StepError(str(e), "VARIABLE_ERROR", e))
            self.events.emit(EventType.STEP_FAILED, execution_id, step=step.name, error=str(e))
            return
        step_context = context.for_step(scope)

        if step.when:
            try:
                result.condition_result = evaluate_condition(step.when, scope)
            except ExpressionError as e:
                logger.warning(f"Step '{step.name}': condition error, treating as false: {e}")
                result.condition_result = False
            if not result.condition_result:
                result.finish(StepStatus.SKIPPED)
                self.events.emit(EventType.STEP_SKIPPED, execution_id, step=step.name, reason="condition")
                return

        result.start()
        self.events.emit(EventType.STEP_STARTED, execution_id, step=step.name, tool=step.tool, phase=result.phase)

        attempts = 1 + self.retry_budget(step, options)
        timeout = step.timeout or options.timeout or self.config.default_timeout
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                tool_result = await self._dispatch(step, step_context, timeout)
            except asyncio.CancelledError:
                self._mark_cancelled(result, execution_id, "step cancelled")
                raise
            except Exception as e:
                last_error = e
                if not is_retryable(e) or attempt == attempts - 1:
                    break
                if execution_id in self._cancelled:
                    self._mark_cancelled(result, execution_id, "execution cancelled")
                    return
                result.retry_count += 1
                delay = self.retry_delay(result.retry_count)
                logger.debug(f"Step '{step.name}' attempt {attempt + 1} failed ({e}), retrying in {delay:.2f}s")
                self.events.emit(
                    EventType.STEP_RETRY,
                    execution_id,
                    step=step.name,
                    attempt=result.retry_count,
                    delay=delay,
                    error=str(e),
                )
                try:
                    await asyncio.sleep(delay)
                except asyncio.CancelledError:
                    self._mark_cancelled(result, execution_id, "step cancelled during retry backoff")
                    raise
                continue

            result.files_created = list(tool_result.files_created)
            result.files_modified = list(tool_result.files_modified)
            result.files_deleted = list(tool_result.files_deleted)
            result.output = tool_result.output
            result.variables = dict(tool_result.variables)
            result.finish(StepStatus.COMPLETED)
            self.events.emit(EventType.STEP_COMPLETED, execution_id, step=step.name, duration=result.duration)
            return

        assert last_error is not None
        message = str(last_error) or type(last_error).__name__
        if isinstance(last_error, ExecutionCancelledError):
            self._mark_cancelled(result, execution_id, message)
            return
        cause: Exception = last_error
        code = error_code(last_error)
        if is_retryable(last_error):
            # Retries exhausted; timeouts keep their own code
            cause = StepExecutionError(step.name, message, step.tool, last_error)
            if code != "TIMEOUT":
                code = error_code(cause)
        result.finish(StepStatus.FAILED, StepError(message, code, cause))
        logger.debug(f"Step '{step.name}' failed after {result.retry_count + 1} attempts: {message}")
        self.events.emit(
            EventType.STEP_FAILED, execution_id, step=step.name, error=message, attempts=result.retry_count + 1
        )

    async def _dispatch(self, step: Step, context: StepContext, timeout: float | None) -> ToolResult:
        tool = await self.registry.resolve(step.tool, step.tool_name)
        active = self._active_tools.setdefault(context.execution_id, set())
        active.add(tool)
        try:
            validation = await tool.validate(step, context)
            if not validation.is_valid:
                raise ToolValidationError(step.name, validation.errors)
            if timeout:
                try:
                    return await asyncio.wait_for(tool.execute(step, context), timeout)
                except asyncio.TimeoutError:
                    raise TimeoutError(f"timed out after {timeout}s") from None
            return await tool.execute(step, context)
        finally:
            active.discard(tool)
            await self.registry.release(tool)

    def _mark_cancelled(self, result: StepResult, execution_id: str, reason: str) -> None:
        if result.status.is_terminal:
            return
        result.finish(StepStatus.CANCELLED, StepError(reason, "CANCELLED"))
        self.events.emit(EventType.STEP_CANCELLED, execution_id, step=result.step_name, reason=reason)
