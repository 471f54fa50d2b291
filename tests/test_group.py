"""Tests for running a directory of recipes as a group."""

import pytest
import yaml

from recipe_orchestrator.engine import RecipeExecutionOptions
from recipe_orchestrator.errors import CircularDependencyError
from recipe_orchestrator.errors import SourceError
from recipe_orchestrator.errors import ValidationError
from recipe_orchestrator.events import EventType
from recipe_orchestrator.group import GroupExecutor
from recipe_orchestrator.group import GroupRecipeEntry
from recipe_orchestrator.models import RecipeConfig
from recipe_orchestrator.results import ExecutionStatus


def member(name, provides=None, requires=None, exports=None, **params):
    """Recipe mapping with one fake step."""
    data = {
        "name": name,
        "steps": [{"name": f"{name}-step", "action": "x", "retries": 0, "parameters": dict(params)}],
    }
    if provides:
        data["provides"] = list(provides)
    if requires:
        data["variables"] = {var: {"type": "string", "required": True} for var in requires}
    if exports:
        data["steps"][0]["parameters"]["exports"] = exports
    return data


def write_member(root, relative, data, filename="recipe.yml"):
    directory = root / relative
    directory.mkdir(parents=True, exist_ok=True)
    (directory / filename).write_text(yaml.safe_dump(data))
    return directory


def entry(name, data) -> GroupRecipeEntry:
    return GroupRecipeEntry(name=name, recipe_path=None, config=RecipeConfig.from_dict(data))


@pytest.fixture
def group_dir(temp_dir):
    root = temp_dir / "stack"
    write_member(root, "api", member("api", provides=["apiUrl"], exports={"apiUrl": "http://api"}))
    write_member(root, "web", member("web", provides=["webUrl"], requires=["apiUrl"], exports={"webUrl": "http://web"}))
    write_member(root, "docs", member("docs", requires=["apiUrl", "webUrl", "title"]))
    return root


@pytest.fixture
def group_executor(engine) -> GroupExecutor:
    return GroupExecutor(engine)


class TestDiscoverGroup:
    """Tests for finding member recipes on disk."""

    def test_members_sorted_by_relative_path(self, group_executor, group_dir):
        group = group_executor.discover_group(group_dir)
        assert [e.name for e in group.recipes] == ["api", "docs", "web"]
        assert group.directory == group_dir.resolve()

    def test_nested_directories_searched(self, group_executor, temp_dir):
        root = temp_dir / "tree"
        write_member(root, "services/auth", member("auth"))
        write_member(root, "services/billing", member("billing"), filename="recipe.yaml")
        (root / "empty").mkdir(parents=True)

        group = group_executor.discover_group(root)

        assert [e.name for e in group.recipes] == ["services/auth", "services/billing"]
        assert group.get("services/billing").recipe_path.name == "recipe.yaml"

    def test_recipe_directory_is_a_leaf(self, group_executor, temp_dir):
        """Directories below a member recipe are not searched."""
        root = temp_dir / "tree"
        write_member(root, "app", member("app"))
        write_member(root, "app/plugins/extra", member("extra"))

        group = group_executor.discover_group(root)

        assert [e.name for e in group.recipes] == ["app"]

    def test_missing_directory(self, group_executor, temp_dir):
        with pytest.raises(SourceError, match="Recipe group directory not found"):
            group_executor.discover_group(temp_dir / "nowhere")


class TestDependencyGraph:
    """Tests for implicit edges derived from provides and required inputs."""

    def test_edges_follow_providers(self, group_executor):
        entries = [
            entry("api", member("api", provides=["apiUrl"])),
            entry("web", member("web", provides=["webUrl"], requires=["apiUrl"])),
            entry("docs", member("docs", requires=["apiUrl", "webUrl"])),
        ]

        graph = group_executor.build_dependency_graph(entries)

        assert graph.errors == []
        assert graph.edges == {"api": set(), "web": {"api"}, "docs": {"api", "web"}}
        assert graph.provides_map == {"apiUrl": "api", "webUrl": "web"}
        assert group_executor.topological_sort(graph.edges) == [["api"], ["web"], ["docs"]]

    def test_self_provided_input_adds_no_edge(self, group_executor):
        graph = group_executor.build_dependency_graph([entry("solo", member("solo", provides=["x"], requires=["x"]))])
        assert graph.edges == {"solo": set()}

    def test_duplicate_provider_reported(self, group_executor):
        entries = [entry("a", member("a", provides=["token"])), entry("b", member("b", provides=["token"]))]

        graph = group_executor.build_dependency_graph(entries)

        assert graph.errors == ["Variable 'token' is provided by both 'a' and 'b'"]
        assert graph.provides_map == {"token": "a"}

    def test_cycle_reported(self, group_executor):
        entries = [
            entry("a", member("a", provides=["x"], requires=["y"])),
            entry("b", member("b", provides=["y"], requires=["x"])),
        ]
        graph = group_executor.build_dependency_graph(entries)
        assert len(graph.errors) == 1
        assert graph.errors[0].startswith("Circular dependency detected:")

    def test_independent_members_share_a_batch(self, group_executor):
        entries = [entry("b", member("b")), entry("a", member("a"))]
        graph = group_executor.build_dependency_graph(entries)
        assert group_executor.topological_sort(graph.edges) == [["a", "b"]]

    def test_external_params(self, group_executor):
        entries = [
            entry("api", member("api", provides=["apiUrl"], requires=["region"])),
            entry("web", member("web", requires=["apiUrl", "region", "domain"])),
        ]
        graph = group_executor.build_dependency_graph(entries)

        required_by = group_executor.compute_external_params(entries, graph.provides_map)

        assert required_by == {"domain": ["web"], "region": ["api", "web"]}
        assert list(required_by) == ["domain", "region"]


class TestExecuteGroup:
    """Tests for running members batch by batch."""

    @pytest.mark.asyncio
    async def test_provided_values_flow_forward(self, group_executor, group_dir, recorder):
        result = await group_executor.run_group(
            group_dir, base_vars={"title": "Handbook"}, options=RecipeExecutionOptions(skip_prompts=True)
        )

        assert result.success, result.errors
        assert result.batches == [["api"], ["web"], ["docs"]]
        assert recorder.step_names == ["api-step", "web-step", "docs-step"]
        seen = dict(recorder.calls)
        assert seen["web-step"]["apiUrl"] == "http://api"
        assert seen["docs-step"]["webUrl"] == "http://web"
        assert seen["docs-step"]["title"] == "Handbook"
        assert result.provided_values == {"title": "Handbook", "apiUrl": "http://api", "webUrl": "http://web"}
        assert result.external_params == ["title"]
        assert result.required_by == {"title": ["docs"]}
        assert [name for name, _ in result.recipe_results] == ["api", "web", "docs"]
        assert result.get_result("web").status == ExecutionStatus.COMPLETED
        assert result.duration >= 0

    @pytest.mark.asyncio
    async def test_option_variables_override_provided_values(self, group_executor, group_dir, recorder):
        options = RecipeExecutionOptions(variables={"apiUrl": "http://override", "title": "T"}, skip_prompts=True)

        result = await group_executor.run_group(group_dir, options=options)

        assert result.success
        assert dict(recorder.calls)["web-step"]["apiUrl"] == "http://override"

    @pytest.mark.asyncio
    async def test_missing_external_input_becomes_failed_result(self, group_executor, group_dir, recorder):
        """A member that cannot start is reported as failed instead of raising."""
        result = await group_executor.run_group(group_dir, options=RecipeExecutionOptions(skip_prompts=True))

        assert not result.success
        docs = result.get_result("docs")
        assert docs.status == ExecutionStatus.FAILED
        assert docs.execution_id == ""
        assert result.errors == ["docs: Missing required variables: title"]
        assert "docs-step" not in recorder.step_names

    @pytest.mark.asyncio
    async def test_failed_batch_stops_later_batches(self, group_executor, temp_dir, recorder):
        root = temp_dir / "broken"
        write_member(root, "first", member("first", provides=["a"], fail_times=-1, error="boom"))
        write_member(root, "second", member("second", requires=["a"]))

        result = await group_executor.run_group(root, options=RecipeExecutionOptions(skip_prompts=True))

        assert not result.success
        assert result.errors == ["first: first-step: boom"]
        assert [name for name, _ in result.recipe_results] == ["first"]
        assert result.get_result("second") is None
        assert "second-step" not in recorder.step_names

    @pytest.mark.asyncio
    async def test_continue_on_error_runs_later_batches(self, group_executor, temp_dir, recorder):
        root = temp_dir / "broken"
        write_member(root, "first", member("first", provides=["a"], fail_times=-1, error="boom"))
        write_member(root, "second", member("second", requires=["a"]))

        result = await group_executor.run_group(
            root, base_vars={"a": "fallback"}, options=RecipeExecutionOptions(continue_on_error=True)
        )

        assert not result.success
        assert [name for name, _ in result.recipe_results] == ["first", "second"]
        assert result.get_result("second").success
        assert dict(recorder.calls)["second-step"]["a"] == "fallback"

    @pytest.mark.asyncio
    async def test_members_of_a_batch_all_run(self, group_executor, temp_dir, recorder):
        root = temp_dir / "flat"
        write_member(root, "bad", member("bad", fail_times=-1))
        write_member(root, "good", member("good"))

        result = await group_executor.run_group(root)

        assert sorted(recorder.step_names) == ["bad-step", "good-step"]
        assert result.get_result("good").success
        assert not result.get_result("bad").success

    @pytest.mark.asyncio
    async def test_cycle_raises_before_running(self, group_executor, temp_dir, recorder):
        root = temp_dir / "loop"
        write_member(root, "a", member("a", provides=["x"], requires=["y"]))
        write_member(root, "b", member("b", provides=["y"], requires=["x"]))

        with pytest.raises(CircularDependencyError):
            await group_executor.run_group(root)
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_provider_raises(self, group_executor, temp_dir, recorder):
        root = temp_dir / "dupes"
        write_member(root, "a", member("a", provides=["token"]))
        write_member(root, "b", member("b", provides=["token"]))

        with pytest.raises(ValidationError, match="provided by both 'a' and 'b'"):
            await group_executor.run_group(root)
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_group_events(self, group_executor, group_dir, events):
        received = []
        events.subscribe(received.append)

        await group_executor.run_group(group_dir, base_vars={"title": "T"})

        group_events = [e for e in received if e.execution_id.startswith("group_")]
        types = [e.type for e in group_events]
        assert types[0] == EventType.GROUP_STARTED
        assert types[-1] == EventType.GROUP_COMPLETED
        assert types.count(EventType.GROUP_BATCH) == 3
        assert types.count(EventType.RECIPE_STARTED) == 3
        assert types.count(EventType.RECIPE_COMPLETED) == 3
        assert len({e.execution_id for e in group_events}) == 1
        assert group_events[-1].data["success"] is True

    @pytest.mark.asyncio
    async def test_unexpected_member_error_becomes_failed_result(self, group_executor, engine, temp_dir, recorder):
        """One member raising does not abandon its siblings."""
        root = temp_dir / "flat"
        write_member(root, "bad", member("bad"))
        write_member(root, "good", member("good", sleep=0.05))
        execute_recipe = engine.execute_recipe

        async def flaky_execute(recipe, options=None):
            if recipe.name == "bad":
                raise RuntimeError("kaboom")
            return await execute_recipe(recipe, options)

        engine.execute_recipe = flaky_execute

        result = await group_executor.run_group(root)

        assert result.get_result("bad").errors == ["kaboom"]
        assert result.get_result("good").success
        assert recorder.step_names == ["good-step"]
        assert result.errors == ["bad: kaboom"]
