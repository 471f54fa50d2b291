"""Recipe source descriptors, security policy and fetching."""

import hashlib
import logging
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any
from typing import Protocol

import httpx

from .errors import SourceError
from .models import RecipeDependency

logger = logging.getLogger(__name__)

SOURCE_KINDS = ("file", "url", "package", "content")

# File names that mark a directory as holding a recipe
RECIPE_FILENAMES = ("recipe.yml", "recipe.yaml")


@dataclass(frozen=True)
class RecipeSource:
    """Canonical descriptor for where a recipe comes from."""

    kind: str  # file, url, package or content
    path: str | None = None
    url: str | None = None
    name: str | None = None
    version: str | None = None
    content: str | None = field(default=None, repr=False)

    @property
    def is_external(self) -> bool:
        return self.kind in ("url", "package")

    @property
    def location(self) -> str:
        """Human-readable location; also what trusted-source prefixes match against."""
        if self.kind == "file":
            return self.path or ""
        if self.kind == "url":
            return self.url or ""
        return self.name or ""

    @property
    def cache_key(self) -> str:
        if self.kind == "file":
            return f"file:{self.path}"
        if self.kind == "url":
            return f"url:{self.url}" + (f"@{self.version}" if self.version else "")
        if self.kind == "package":
            return f"package:{self.name}" + (f"@{self.version}" if self.version else "")
        digest = hashlib.sha256((self.content or "").encode("utf-8")).hexdigest()[:12]
        return f"content:{self.name or 'inline'}:{digest}"


def _file_source(path: str | Path, base_dir: Path | None) -> RecipeSource:
    resolved = Path(path).expanduser()
    if not resolved.is_absolute() and base_dir is not None:
        resolved = base_dir / resolved
    return RecipeSource(kind="file", path=str(resolved.resolve()))


def normalize_source(source: Any, base_dir: Path | None = None) -> RecipeSource:
    """
    Turn a user-supplied source reference into a RecipeSource.

    Strings are auto-detected: http(s) URLs, multi-line inline content, file
    paths (path separators, a leading dot, or a .yml/.yaml suffix), and
    otherwise package names with an optional ``@version``.

    Args:
        source: RecipeSource, Path, mapping with a ``type`` key, or string
        base_dir: Directory relative file paths resolve against

    Raises:
        SourceError: If the reference cannot be interpreted
    """
    if isinstance(source, RecipeSource):
        if source.kind == "file" and source.path:
            return _file_source(source.path, base_dir)
        return source

    if isinstance(source, Path):
        return _file_source(source, base_dir)

    if isinstance(source, dict):
        kind = source.get("type") or source.get("kind")
        if kind not in SOURCE_KINDS:
            raise SourceError(f"Unknown source type: {kind!r}", str(source))
        if kind == "file":
            if not source.get("path"):
                raise SourceError("File source requires 'path'")
            return _file_source(source["path"], base_dir)
        if kind == "url" and not source.get("url"):
            raise SourceError("URL source requires 'url'")
        if kind == "package" and not source.get("name"):
            raise SourceError("Package source requires 'name'")
        if kind == "content" and source.get("content") is None:
            raise SourceError("Content source requires 'content'")
        return RecipeSource(
            kind=kind,
            url=source.get("url"),
            name=source.get("name"),
            version=source.get("version"),
            content=source.get("content"),
        )

    if not isinstance(source, str) or not source.strip():
        raise SourceError(f"Invalid recipe source: {source!r}")

    text = source.strip()
    if text.startswith(("http://", "https://")):
        return RecipeSource(kind="url", url=text)
    if "\n" in text:
        return RecipeSource(kind="content", name="inline", content=source)
    looks_like_path = (
        ("/" in text and not text.startswith("@"))
        or "\\" in text
        or text.startswith((".", "~"))
        or text.endswith((".yml", ".yaml"))
    )
    if looks_like_path:
        return _file_source(text, base_dir)

    name, _, version = text.rpartition("@")
    if not name:
        name, version = text, ""
    return RecipeSource(kind="package", name=name, version=version or None)


def dependency_to_source(dependency: RecipeDependency, base_dir: Path | None = None) -> RecipeSource:
    """Map a declared dependency to the source it loads from.

    Raises:
        SourceError: If the dependency cannot be mapped
    """
    if dependency.type == "github":
        url = dependency.url or f"https://raw.githubusercontent.com/{dependency.name}/main/recipe.yml"
        return RecipeSource(kind="url", url=url, version=dependency.version)
    if dependency.type == "http":
        if not dependency.url:
            raise SourceError(f"HTTP dependency requires URL: {dependency.name}")
        return RecipeSource(kind="url", url=dependency.url, version=dependency.version)
    if dependency.type == "local":
        return _file_source(dependency.name, base_dir)
    return RecipeSource(kind="package", name=dependency.name, version=dependency.version)


@dataclass
class SecurityPolicy:
    """Gate for loading recipes from outside the working tree."""

    allow_external_sources: bool = False
    trusted_sources: list[str] = field(default_factory=list)  # Empty means any source is trusted

    def check(self, source: RecipeSource) -> None:
        """Raise SourceError if the policy forbids loading ``source``."""
        if not source.is_external:
            return
        if not self.allow_external_sources:
            raise SourceError(
                f"External recipe sources are not allowed by security policy: {source.location}",
                source.location,
            )
        if self.trusted_sources and not any(source.location.startswith(t) for t in self.trusted_sources):
            raise SourceError(f"Untrusted recipe source: {source.location}", source.location)

    def validate(self) -> list[str]:
        errors = []
        if not isinstance(self.trusted_sources, list) or not all(isinstance(t, str) for t in self.trusted_sources):
            errors.append("security.trusted_sources must be a list of strings")
        return errors


class SourceFetcher(Protocol):
    """Returns the raw text of a recipe source."""

    async def fetch(self, source: RecipeSource) -> str: ...


def find_recipe_file(directory: Path) -> Path | None:
    """Return the recipe definition file inside ``directory``, if any."""
    for filename in RECIPE_FILENAMES:
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    return None


class DefaultSourceFetcher:
    """Fetches files from disk, packages from a local directory, and URLs over HTTP."""

    def __init__(self, package_dir: Path | None = None, timeout: float = 60.0):
        self.package_dir = package_dir or Path(".recipes")
        self.timeout = timeout

    async def fetch(self, source: RecipeSource) -> str:
        if source.kind == "content":
            return source.content or ""
        if source.kind == "file":
            return self._read_file(Path(source.path or ""), source)
        if source.kind == "package":
            return self._read_package(source)
        if source.kind == "url":
            return await self._fetch_url(source)
        raise SourceError(f"Unsupported source type: {source.kind}", source.location)

    def _read_file(self, path: Path, source: RecipeSource) -> str:
        if path.is_dir():
            recipe_file = find_recipe_file(path)
            if recipe_file is None:
                raise SourceError(f"No recipe file found in directory: {path}", source.location)
            path = recipe_file
        if not path.exists():
            raise SourceError(f"Recipe file not found: {path}", source.location)
        try:
            with open(path, encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            raise SourceError(f"Cannot read recipe file {path}: {e}", source.location) from e

    def _read_package(self, source: RecipeSource) -> str:
        package_path = self.package_dir / (source.name or "")
        if source.version:
            versioned = self.package_dir / f"{source.name}@{source.version}"
            if versioned.is_dir():
                package_path = versioned
            else:
                logger.debug(f"No pinned copy of {source.name}@{source.version}, using {package_path}")
        if not package_path.is_dir():
            raise SourceError(f"Recipe package not found: {source.name}", source.location)
        return self._read_file(package_path, source)

    async def _fetch_url(self, source: RecipeSource) -> str:
        url = source.url or ""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url, headers={"Accept": "text/yaml, text/plain, */*"})
                response.raise_for_status()
                return response.text
        except httpx.HTTPStatusError as e:
            raise SourceError(f"Failed to fetch recipe from {url}: HTTP {e.response.status_code}", url) from e
        except httpx.HTTPError as e:
            raise SourceError(f"Failed to fetch recipe from {url}: {e}", url) from e
