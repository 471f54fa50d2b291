"""Tests for sources, the recipe cache and the loader."""

from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

from recipe_orchestrator.cache import CacheConfig
from recipe_orchestrator.cache import RecipeCache
from recipe_orchestrator.errors import ParseError
from recipe_orchestrator.errors import RecipeDependencyError
from recipe_orchestrator.errors import SourceError
from recipe_orchestrator.errors import ValidationError
from recipe_orchestrator.loader import RecipeLoader
from recipe_orchestrator.models import RecipeDependency
from recipe_orchestrator.sources import DefaultSourceFetcher
from recipe_orchestrator.sources import RecipeSource
from recipe_orchestrator.sources import SecurityPolicy
from recipe_orchestrator.sources import dependency_to_source
from recipe_orchestrator.sources import normalize_source

SIMPLE_RECIPE = """
name: simple
steps:
  - name: hello
    command: echo hello
"""


def write_recipe(directory: Path, filename: str, content: str) -> Path:
    path = directory / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestNormalizeSource:
    """Tests for source auto-detection."""

    def test_url(self):
        url = "https://example.com/r.yml"
        assert normalize_source(url) == RecipeSource(kind="url", url=url)

    def test_relative_path(self, temp_dir):
        source = normalize_source("./recipes/a.yml", temp_dir)
        assert source.kind == "file"
        assert source.path == str((temp_dir / "recipes" / "a.yml").resolve())

    def test_yaml_suffix_is_path(self, temp_dir):
        assert normalize_source("recipe.yaml", temp_dir).kind == "file"

    def test_package_with_version(self):
        source = normalize_source("react-component@1.2.0")
        assert (source.kind, source.name, source.version) == ("package", "react-component", "1.2.0")

    def test_scoped_package(self):
        source = normalize_source("@org/recipes")
        assert (source.kind, source.name, source.version) == ("package", "@org/recipes", None)

    def test_inline_content(self):
        source = normalize_source(SIMPLE_RECIPE)
        assert source.kind == "content"
        assert source.cache_key.startswith("content:inline:")

    def test_mapping(self):
        source = normalize_source({"type": "package", "name": "utils", "version": "2"})
        assert source.cache_key == "package:utils@2"

    def test_unknown_mapping_type(self):
        with pytest.raises(SourceError, match="Unknown source type"):
            normalize_source({"type": "ftp"})

    def test_invalid(self):
        with pytest.raises(SourceError):
            normalize_source("   ")

    def test_dependency_mapping(self, temp_dir):
        github = dependency_to_source(RecipeDependency(name="org/repo", type="github"))
        assert github.url == "https://raw.githubusercontent.com/org/repo/main/recipe.yml"
        local = dependency_to_source(RecipeDependency(name="shared", type="local"), temp_dir)
        assert local.path == str((temp_dir / "shared").resolve())
        assert dependency_to_source(RecipeDependency(name="pkg")).kind == "package"


class TestSecurityPolicy:
    def test_local_always_allowed(self, temp_dir):
        SecurityPolicy().check(normalize_source(temp_dir / "r.yml"))

    def test_external_blocked_by_default(self):
        with pytest.raises(SourceError, match="not allowed by security policy"):
            SecurityPolicy().check(normalize_source("https://example.com/r.yml"))

    def test_trusted_prefixes(self):
        policy = SecurityPolicy(allow_external_sources=True, trusted_sources=["https://trusted.dev/"])
        policy.check(normalize_source("https://trusted.dev/r.yml"))
        with pytest.raises(SourceError, match="Untrusted recipe source"):
            policy.check(normalize_source("https://evil.dev/r.yml"))

    def test_empty_trust_list_trusts_everything(self):
        SecurityPolicy(allow_external_sources=True).check(normalize_source("any-package"))


class TestRecipeCache:
    """Tests for TTL expiry and sweeping."""

    def test_get_set(self):
        cache = RecipeCache()
        cache.set("k", 1)
        assert cache.get("k") == 1
        assert "k" in cache
        assert cache.hits == 1

    def test_expiry(self):
        clock = FakeClock()
        cache = RecipeCache(CacheConfig(ttl=10, sweep_interval=1000), clock=clock)
        cache.set("k", 1)
        clock.now = 11
        assert cache.get("k") is None
        assert cache.misses == 1
        assert len(cache) == 0

    def test_sweep_on_access(self):
        clock = FakeClock()
        cache = RecipeCache(CacheConfig(ttl=10, sweep_interval=5), clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        clock.now = 20
        cache.get("other")
        assert len(cache) == 0

    def test_disabled(self):
        cache = RecipeCache(CacheConfig(enabled=False))
        cache.set("k", 1)
        assert cache.get("k") is None


class TestRecipeLoader:
    """Tests for loading, caching and dependency handling."""

    @pytest.mark.asyncio
    async def test_load_file(self, temp_dir):
        path = write_recipe(temp_dir, "simple.yml", SIMPLE_RECIPE)
        result = await RecipeLoader(working_dir=temp_dir).load(path)
        assert result.recipe.name == "simple"
        assert result.recipe.source_path == str(path.resolve())
        assert result.validation.is_valid
        assert not result.from_cache

    @pytest.mark.asyncio
    async def test_load_directory(self, temp_dir):
        write_recipe(temp_dir, "component/recipe.yaml", SIMPLE_RECIPE)
        result = await RecipeLoader(working_dir=temp_dir).load("./component")
        assert result.recipe.name == "simple"
        assert result.recipe.source_path.endswith("recipe.yaml")

    @pytest.mark.asyncio
    async def test_cache_prevents_refetch(self, temp_dir):
        fetcher = AsyncMock()
        fetcher.fetch.return_value = SIMPLE_RECIPE
        loader = RecipeLoader(fetcher=fetcher, working_dir=temp_dir)

        first = await loader.load("simple.yml")
        second = await loader.load("simple.yml")

        assert fetcher.fetch.call_count == 1
        assert second.from_cache
        assert second.recipe == first.recipe

    @pytest.mark.asyncio
    async def test_missing_file(self, temp_dir):
        with pytest.raises(SourceError, match="Recipe file not found"):
            await RecipeLoader(working_dir=temp_dir).load("missing.yml")

    @pytest.mark.asyncio
    async def test_parse_error(self, temp_dir):
        write_recipe(temp_dir, "bad.yml", "name: [oops")
        with pytest.raises(ParseError):
            await RecipeLoader(working_dir=temp_dir).load("bad.yml")

    @pytest.mark.asyncio
    async def test_invalid_recipe(self, temp_dir):
        write_recipe(temp_dir, "empty.yml", "name: empty\nsteps: []\n")
        loader = RecipeLoader(working_dir=temp_dir)

        with pytest.raises(ValidationError) as exc_info:
            await loader.load("empty.yml")
        assert exc_info.value.errors == ["Recipe must have at least one step"]

        result = await loader.load("empty.yml", validate=False)
        assert not result.validation.is_valid
        assert len(loader.cache) == 0

    @pytest.mark.asyncio
    async def test_external_source_blocked_before_fetch(self, temp_dir):
        fetcher = AsyncMock()
        loader = RecipeLoader(fetcher=fetcher, working_dir=temp_dir)
        with pytest.raises(SourceError):
            await loader.load("https://example.com/recipe.yml")
        fetcher.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_required_dependency_failure(self, temp_dir):
        write_recipe(
            temp_dir,
            "main.yml",
            SIMPLE_RECIPE + "dependencies:\n  - name: ./missing.yml\n    type: local\n",
        )
        with pytest.raises(RecipeDependencyError, match="Required dependency './missing.yml'"):
            await RecipeLoader(working_dir=temp_dir).load("main.yml")

    @pytest.mark.asyncio
    async def test_optional_dependency_becomes_warning(self, temp_dir):
        write_recipe(
            temp_dir,
            "main.yml",
            SIMPLE_RECIPE + "dependencies:\n  - name: ./missing.yml\n    type: local\n    optional: true\n",
        )
        result = await RecipeLoader(working_dir=temp_dir).load("main.yml")
        assert result.dependencies == []
        assert any("Optional dependency './missing.yml' skipped" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_dependencies_loaded(self, temp_dir):
        write_recipe(temp_dir, "shared.yml", SIMPLE_RECIPE.replace("simple", "shared"))
        write_recipe(
            temp_dir,
            "main.yml",
            SIMPLE_RECIPE + "dependencies:\n  - name: ./shared.yml\n    type: local\n",
        )
        result = await RecipeLoader(working_dir=temp_dir).load("main.yml")
        assert [d.name for d in result.dependencies] == ["shared"]

    @pytest.mark.asyncio
    async def test_circular_dependencies(self, temp_dir):
        write_recipe(temp_dir, "a.yml", SIMPLE_RECIPE + "dependencies:\n  - name: ./b.yml\n    type: local\n")
        write_recipe(temp_dir, "b.yml", SIMPLE_RECIPE + "dependencies:\n  - name: ./a.yml\n    type: local\n")
        with pytest.raises(RecipeDependencyError, match="circular recipe dependency"):
            await RecipeLoader(working_dir=temp_dir).load("a.yml")

    @pytest.mark.asyncio
    async def test_package_from_package_dir(self, temp_dir):
        packages = temp_dir / "packages"
        write_recipe(packages, "widgets@2.0.0/recipe.yml", SIMPLE_RECIPE.replace("simple", "widgets-v2"))
        write_recipe(packages, "widgets/recipe.yml", SIMPLE_RECIPE.replace("simple", "widgets"))
        loader = RecipeLoader(
            fetcher=DefaultSourceFetcher(packages),
            policy=SecurityPolicy(allow_external_sources=True),
            working_dir=temp_dir,
        )

        assert (await loader.load("widgets@2.0.0")).recipe.name == "widgets-v2"
        assert (await loader.load("widgets")).recipe.name == "widgets"


class TestUrlFetching:
    """Tests for HTTP fetching through httpx."""

    @pytest.mark.asyncio
    async def test_http_error_becomes_source_error(self, monkeypatch):
        def handler(request):
            return httpx.Response(404, request=request)

        transport = httpx.MockTransport(handler)
        original = httpx.AsyncClient

        def client_factory(**kwargs):
            return original(transport=transport, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", client_factory)
        fetcher = DefaultSourceFetcher()

        with pytest.raises(SourceError, match="HTTP 404"):
            await fetcher.fetch(RecipeSource(kind="url", url="https://example.com/r.yml"))

    @pytest.mark.asyncio
    async def test_fetch_text(self, monkeypatch):
        def handler(request):
            return httpx.Response(200, text=SIMPLE_RECIPE, request=request)

        transport = httpx.MockTransport(handler)
        original = httpx.AsyncClient
        monkeypatch.setattr(httpx, "AsyncClient", lambda **kwargs: original(transport=transport, **kwargs))

        text = await DefaultSourceFetcher().fetch(RecipeSource(kind="url", url="https://example.com/r.yml"))
        assert "name: simple" in text
