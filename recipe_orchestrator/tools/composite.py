"""Sequence and parallel step tools: run nested steps through the step executor."""

import asyncio
import logging

from ..context import StepContext
from ..models import ParallelStep
from ..models import SequenceStep
from ..models import Step
from ..results import StepResult
from ..results import StepStatus
from .base import Tool
from .base import ToolResult

logger = logging.getLogger(__name__)


def _combine(step: Step, results: list[StepResult]) -> ToolResult:
    """Merge nested results; raise if a nested step failed without tolerating it."""
    failed = [
        r
        for r in results
        if r.status in (StepStatus.FAILED, StepStatus.CANCELLED)
        and not _tolerated(step, r.step_name)
    ]
    if failed:
        details = "; ".join(f"{r.step_name}: {r.error.message if r.error else r.status.value}" for r in failed)
        raise ValueError(f"nested steps failed: {details}")

    combined = ToolResult(output={r.step_name: r.status.value for r in results})
    for r in results:
        combined.files_created.extend(f for f in r.files_created if f not in combined.files_created)
        combined.files_modified.extend(f for f in r.files_modified if f not in combined.files_modified)
        combined.files_deleted.extend(f for f in r.files_deleted if f not in combined.files_deleted)
        combined.variables.update(r.variables)
    return combined


def _tolerated(step: Step, nested_name: str) -> bool:
    for nested in getattr(step, "steps", []):
        if nested.name == nested_name:
            return bool(nested.continue_on_error)
    return False


class SequenceTool(Tool):
    kind = "sequence"

    async def execute(self, step: Step, context: StepContext) -> ToolResult:
        """Run nested steps in order; each sees the variables exported before it."""
        assert isinstance(step, SequenceStep), "Sequence tool requires a sequence step"
        if context.executor is None:
            raise ValueError("sequence steps need an executor in the execution context")

        variables = dict(context.variables)
        results = []
        for index, nested in enumerate(step.steps):
            result = await context.executor.execute_step(nested, context.for_step(variables), phase=index)
            results.append(result)
            variables.update(result.variables)
            if result.status == StepStatus.FAILED and not nested.continue_on_error:
                logger.debug(f"Sequence '{step.name}' stopped at '{nested.name}'")
                break
        return _combine(step, results)


class ParallelTool(Tool):
    kind = "parallel"

    async def execute(self, step: Step, context: StepContext) -> ToolResult:
        """Run nested steps concurrently, at most ``max_concurrency`` at a time."""
        assert isinstance(step, ParallelStep), "Parallel tool requires a parallel step"
        if context.executor is None:
            raise ValueError("parallel steps need an executor in the execution context")

        limit = step.max_concurrency or context.executor.config.max_concurrency
        semaphore = asyncio.Semaphore(limit)

        async def run(nested: Step) -> StepResult:
            async with semaphore:
                return await context.executor.execute_step(nested, context.for_step(context.variables))

        results = await asyncio.gather(*(run(nested) for nested in step.steps))
        return _combine(step, sorted(results, key=lambda r: r.step_name))
