"""Shared fixtures: temporary directories, recording tools and engines without retry delays."""

import asyncio
import tempfile
from pathlib import Path

import pytest

from recipe_orchestrator.engine import EngineConfig
from recipe_orchestrator.engine import RecipeEngine
from recipe_orchestrator.events import EventBus
from recipe_orchestrator.executor import StepExecutor
from recipe_orchestrator.executor import StepExecutorConfig
from recipe_orchestrator.tools import Tool
from recipe_orchestrator.tools import ToolRegistry
from recipe_orchestrator.tools import ToolResult
from recipe_orchestrator.tools import register_builtin_tools


class FakeTool(Tool):
    """Action tool driven by step parameters.

    Parameters understood:
        fail_times: fail this many attempts before succeeding (``-1`` always fails)
        sleep: seconds to sleep before finishing
        exports: variables to export
        files: files reported as created
        error: message for the raised error
    """

    kind = "action"

    def __init__(self, name: str = "default", calls: list | None = None, attempts: dict | None = None):
        super().__init__(name)
        self.calls = calls if calls is not None else []
        self.attempts = attempts if attempts is not None else {}

    async def execute(self, step, context):
        params = step.parameters
        self.calls.append((step.name, dict(context.variables)))
        attempt = self.attempts.get(step.name, 0) + 1
        self.attempts[step.name] = attempt

        if params.get("sleep"):
            await asyncio.sleep(params["sleep"])

        fail_times = params.get("fail_times", 0)
        if fail_times == -1 or attempt <= fail_times:
            raise RuntimeError(params.get("error", f"{step.name} failed (attempt {attempt})"))

        return ToolResult(
            files_created=list(params.get("files", [])),
            output=f"{step.name} done",
            variables=dict(params.get("exports", {})),
        )


class ToolRecorder:
    """Shared call log for every FakeTool instance a registry creates."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.attempts: dict[str, int] = {}
        self.instances: list[FakeTool] = []

    def factory(self, name: str) -> FakeTool:
        tool = FakeTool(name, self.calls, self.attempts)
        self.instances.append(tool)
        return tool

    @property
    def step_names(self) -> list[str]:
        return [name for name, _ in self.calls]


def action(name: str, **params) -> dict:
    """Step mapping for a FakeTool step."""
    depends_on = params.pop("depends_on", None)
    step = {"name": name, "action": "fake", "parameters": params}
    if depends_on:
        step["dependsOn"] = depends_on
    return step


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def recorder() -> ToolRecorder:
    return ToolRecorder()


@pytest.fixture
def no_delay_config() -> StepExecutorConfig:
    return StepExecutorConfig(retry_base_delay=0, retry_max_delay=0, retry_min_delay=0)


@pytest.fixture
def registry(recorder: ToolRecorder) -> ToolRegistry:
    registry = ToolRegistry()
    register_builtin_tools(registry)
    registry.register("action", recorder.factory)
    return registry


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def executor(registry: ToolRegistry, no_delay_config: StepExecutorConfig, events: EventBus) -> StepExecutor:
    return StepExecutor(registry, no_delay_config, events)


@pytest.fixture
def engine(temp_dir: Path, registry: ToolRegistry, no_delay_config: StepExecutorConfig, events: EventBus):
    """Engine rooted at temp_dir with the fake action tool and no retry delays."""
    config = EngineConfig(working_dir=temp_dir, executor=no_delay_config)
    return RecipeEngine(config, registry=registry, events=events)
