"""Tests for recipe cancellation functionality."""

import asyncio

import pytest
import yaml

from recipe_orchestrator.context import StepContext
from recipe_orchestrator.engine import RecipeExecutionOptions
from recipe_orchestrator.events import EventType
from recipe_orchestrator.models import RecipeConfig
from recipe_orchestrator.results import ExecutionStatus
from recipe_orchestrator.results import StepStatus

SLOW_RECIPE = {
    "name": "slow-recipe",
    "steps": [
        {"name": "fast", "action": "x", "parameters": {"exports": {"ready": True}}},
        {"name": "slow", "action": "x", "dependsOn": ["fast"], "parameters": {"sleep": 5}},
        {"name": "after", "action": "x", "dependsOn": ["slow"]},
    ],
}


async def wait_for_event(queue: asyncio.Queue, event_type: EventType, **match):
    """Wait for the first event of ``event_type`` whose data matches ``match``."""
    while True:
        event = await asyncio.wait_for(queue.get(), timeout=2)
        if event.type == event_type and all(event.data.get(k) == v for k, v in match.items()):
            return event


class TestEngineCancellation:
    """Tests for cancelling running executions through the engine."""

    @pytest.mark.asyncio
    async def test_cancel_running_execution(self, engine, events, recorder):
        """Cancelling keeps finished steps and cancels the rest."""
        queue = events.stream()
        recipe = RecipeConfig.from_dict(SLOW_RECIPE)
        task = asyncio.create_task(
            engine.execute_recipe(recipe, RecipeExecutionOptions(execution_id="exec-cancel"))
        )

        await wait_for_event(queue, EventType.STEP_STARTED, step="slow")
        assert engine.get_execution("exec-cancel").is_active
        assert await engine.cancel_execution("exec-cancel") is True

        result = await task

        assert result.status == ExecutionStatus.CANCELLED
        assert not result.success
        assert "Execution cancelled" in result.errors
        assert result.get_step_result("fast").status == StepStatus.COMPLETED
        assert result.get_step_result("slow").status == StepStatus.CANCELLED
        assert result.get_step_result("after").status == StepStatus.CANCELLED
        assert "after" not in recorder.step_names
        assert engine.get_execution("exec-cancel").status == ExecutionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_tool_cleaned_up_and_dropped(self, engine, events, recorder):
        """The tool running the cancelled step is cleaned up and leaves the pool."""
        queue = events.stream()
        recipe = RecipeConfig.from_dict(SLOW_RECIPE)
        task = asyncio.create_task(
            engine.execute_recipe(recipe, RecipeExecutionOptions(execution_id="exec-cleanup"))
        )

        await wait_for_event(queue, EventType.STEP_STARTED, step="slow")
        await engine.cancel_execution("exec-cleanup")
        await task

        assert any(tool.is_cleaned_up for tool in recorder.instances)
        assert engine.registry.stats()["in_use"] == 0

    @pytest.mark.asyncio
    async def test_cancel_all_executions(self, engine, events):
        """Every active top-level execution is cancelled."""
        queue = events.stream()
        recipe = RecipeConfig.from_dict(SLOW_RECIPE)
        tasks = [
            asyncio.create_task(engine.execute_recipe(recipe, RecipeExecutionOptions(execution_id=f"exec-{i}")))
            for i in range(2)
        ]
        for _ in range(2):
            await wait_for_event(queue, EventType.STEP_STARTED, step="slow")

        assert await engine.cancel_all_executions() == 2
        results = await asyncio.gather(*tasks)
        assert all(r.status == ExecutionStatus.CANCELLED for r in results)

    @pytest.mark.asyncio
    async def test_cancellation_emits_event(self, engine, events):
        received = []
        events.subscribe(received.append)
        queue = events.stream()
        task = asyncio.create_task(
            engine.execute_recipe(
                RecipeConfig.from_dict(SLOW_RECIPE), RecipeExecutionOptions(execution_id="exec-events")
            )
        )
        await wait_for_event(queue, EventType.STEP_STARTED, step="slow")
        await engine.cancel_execution("exec-events")
        await task

        types = [e.type for e in received]
        assert EventType.STEP_CANCELLED in types
        assert types[-1] == EventType.EXECUTION_CANCELLED


class TestNestedCancellation:
    """Tests for cancellation reaching sub-recipes."""

    @pytest.mark.asyncio
    async def test_nested_recipe_inherits_parent_cancellation(self, engine, events, temp_dir):
        """Cancelling the parent cancels the running sub-recipe execution too."""
        child = {"name": "child", "steps": [{"name": "slow", "action": "x", "parameters": {"sleep": 5}}]}
        (temp_dir / "child.yml").write_text(yaml.safe_dump(child))
        (temp_dir / "parent.yml").write_text(
            yaml.safe_dump({"name": "parent", "steps": [{"name": "run-child", "recipe": "./child.yml"}]})
        )

        queue = events.stream()
        task = asyncio.create_task(
            engine.execute_recipe(temp_dir / "parent.yml", RecipeExecutionOptions(execution_id="exec-parent"))
        )
        await wait_for_event(queue, EventType.STEP_STARTED, step="slow")

        await engine.cancel_execution("exec-parent")
        result = await task

        assert result.status == ExecutionStatus.CANCELLED
        assert result.get_step_result("run-child").status == StepStatus.CANCELLED
        children = [r for r in engine.list_executions() if r.parent_id == "exec-parent"]
        assert len(children) == 1
        assert children[0].status == ExecutionStatus.CANCELLED


class TestExecutorCancellation:
    """Tests for StepExecutor cancellation behavior."""

    @pytest.mark.asyncio
    async def test_cancel_with_nothing_running(self, executor):
        assert await executor.cancel_execution("exec-idle") is False

    @pytest.mark.asyncio
    async def test_cancel_stops_later_phases(self, executor, events, recorder, temp_dir):
        queue = events.stream()
        recipe = RecipeConfig.from_dict(SLOW_RECIPE)
        context = StepContext(execution_id="exec-direct", working_dir=temp_dir)
        task = asyncio.create_task(executor.execute_steps(recipe.steps, context))

        await wait_for_event(queue, EventType.STEP_STARTED, step="slow")
        assert await executor.cancel_execution("exec-direct") is True
        results = {r.step_name: r for r in await task}

        assert results["fast"].status == StepStatus.COMPLETED
        assert results["fast"].variables == {"ready": True}
        assert results["slow"].status == StepStatus.CANCELLED
        assert results["after"].status == StepStatus.CANCELLED
        assert results["after"].error.code == "CANCELLED"
