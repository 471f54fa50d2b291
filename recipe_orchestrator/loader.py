"""Recipe loading: source normalization, security gate, caching and dependencies."""

import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from pathlib import Path
from typing import Any

from .cache import RecipeCache
from .errors import RecipeDependencyError
from .errors import RecipeError
from .errors import SourceError
from .errors import ValidationError
from .models import RecipeConfig
from .sources import DefaultSourceFetcher
from .sources import RecipeSource
from .sources import SecurityPolicy
from .sources import SourceFetcher
from .sources import dependency_to_source
from .sources import find_recipe_file
from .sources import normalize_source
from .validator import ValidationResult
from .validator import validate_recipe

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    recipe: RecipeConfig
    source: RecipeSource
    validation: ValidationResult
    dependencies: list[RecipeConfig] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    from_cache: bool = False


class RecipeLoader:
    """Loads recipes from files, packages, URLs or inline content."""

    def __init__(
        self,
        fetcher: SourceFetcher | None = None,
        cache: RecipeCache | None = None,
        policy: SecurityPolicy | None = None,
        working_dir: Path | None = None,
    ):
        self.working_dir = working_dir or Path.cwd()
        self.fetcher = fetcher if fetcher is not None else DefaultSourceFetcher()
        self.cache = cache if cache is not None else RecipeCache()
        self.policy = policy if policy is not None else SecurityPolicy()

    async def load(self, source: Any, base_dir: Path | None = None, validate: bool = True) -> LoadResult:
        """
        Load, parse and validate a recipe and its declared dependencies.

        A cached result is returned without fetching again.

        Args:
            source: Any reference accepted by normalize_source
            base_dir: Directory relative file paths resolve against (default: working dir)
            validate: Raise ValidationError for invalid recipes; when False the
                validation result is returned instead and nothing is cached

        Raises:
            SourceError: Untrusted, disallowed or missing source
            ParseError: Malformed recipe content
            ValidationError: Invalid recipe (only when validate=True)
            RecipeDependencyError: A required dependency failed to load
        """
        descriptor = normalize_source(source, base_dir or self.working_dir)
        return await self._load(descriptor, validate, stack=[])

    def parse(self, text: str, source: RecipeSource) -> RecipeConfig:
        """Parse raw recipe text for ``source``."""
        return RecipeConfig.from_yaml_text(text, self._source_path(source))

    async def _load(self, descriptor: RecipeSource, validate: bool, stack: list[str]) -> LoadResult:
        key = descriptor.cache_key
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Recipe cache hit: {key}")
            return replace(cached, from_cache=True)

        self.policy.check(descriptor)

        try:
            text = await self.fetcher.fetch(descriptor)
        except OSError as e:
            raise SourceError(f"Failed to read recipe source {descriptor.location}: {e}", descriptor.location) from e

        recipe = self.parse(text, descriptor)
        validation = validate_recipe(recipe)
        if not validation.is_valid:
            if validate:
                raise ValidationError(
                    validation.errors,
                    f"Recipe '{recipe.name or descriptor.location}' is invalid:\n"
                    + "\n".join(f"  - {e}" for e in validation.errors),
                )
            return LoadResult(recipe=recipe, source=descriptor, validation=validation, warnings=validation.warnings)

        dependencies, warnings = await self._load_dependencies(recipe, [*stack, key])
        result = LoadResult(
            recipe=recipe,
            source=descriptor,
            validation=validation,
            dependencies=dependencies,
            warnings=[*validation.warnings, *warnings],
        )
        self.cache.set(key, result)
        logger.debug(f"Loaded recipe '{recipe.name}' from {descriptor.location}")
        return result

    async def _load_dependencies(self, recipe: RecipeConfig, stack: list[str]) -> tuple[list[RecipeConfig], list[str]]:
        loaded: list[RecipeConfig] = []
        warnings: list[str] = []
        base_dir = Path(recipe.source_path).parent if recipe.source_path else self.working_dir

        for dependency in recipe.dependencies:
            try:
                dep_source = dependency_to_source(dependency, base_dir)
                if dep_source.cache_key in stack:
                    raise RecipeError(f"circular recipe dependency via {dep_source.location}")
                dep_result = await self._load(dep_source, validate=True, stack=stack)
            except RecipeError as e:
                if dependency.optional:
                    message = f"Optional dependency '{dependency.name}' skipped: {e}"
                    logger.warning(message)
                    warnings.append(message)
                    continue
                raise RecipeDependencyError(dependency.name, str(e), dependency.version) from e

            loaded.append(dep_result.recipe)
            warnings.extend(dep_result.warnings)

        return loaded, warnings

    @staticmethod
    def _source_path(source: RecipeSource) -> str | None:
        if source.kind != "file" or not source.path:
            return None
        path = Path(source.path)
        if path.is_dir():
            recipe_file = find_recipe_file(path)
            return str(recipe_file) if recipe_file else str(path)
        return str(path)
