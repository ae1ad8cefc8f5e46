"""
Version resolution — ``3.4`` → ``3.4.6``, but only if 3.4.6 is verifiable.

A full ``X.Y.Z`` spec is used as-is.  A partial spec (``X`` or ``X.Y``)
is expanded from the tool's version source, newest first, and the
first candidate whose checksum resolves through the GPG, Pinned or
Published tier (or whose artifact has a checkable vendor signature)
wins, and the record found is kept for the download.  Candidates
without an authentic checksum are skipped rather than installed on
computed trust, and there is never a fallback to a version outside
the requested prefix.

Accepted spellings (an optional leading ``v`` is ignored)::

    any        X | X.Y | X.Y.Z   (default)
    flexible   X.Y | X.Y.Z
    semver     X.Y.Z
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from src.core.models.artifact import ArtifactRequest, ResolutionTier, ResolvedVersion
from src.core.models.config import StrategySpec, ToolSpec
from src.core.reliability.retry import RetryExecutor
from src.core.services.fetch import http
from src.core.services.fetch.errors import InvalidVersion, PermanentError
from src.core.services.fetch.provenance import ChecksumProvenanceResolver

logger = logging.getLogger(__name__)

_SPEC_RE = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?$")
_RELEASE_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")

_FORMAT_PARTS: dict[str, tuple[int, ...]] = {
    "any": (1, 2, 3),
    "flexible": (2, 3),
    "semver": (3,),
}

_FORMAT_EXAMPLES = {
    "any": "X, X.Y or X.Y.Z (e.g. 20, 20.11, 20.11.1)",
    "flexible": "X.Y or X.Y.Z (e.g. 1.22 or 1.22.1)",
    "semver": "X.Y.Z (e.g. 1.7.1)",
}


# ── Specs ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class VersionSpec:
    raw: str
    parts: tuple[int, ...]

    @property
    def full(self) -> bool:
        return len(self.parts) == 3

    @property
    def text(self) -> str:
        return ".".join(str(p) for p in self.parts)

    def matches(self, release: tuple[int, int, int]) -> bool:
        return release[: len(self.parts)] == self.parts


def parse_version_spec(value: str | None, *, field: str = "version", fmt: str = "any") -> VersionSpec:
    """Validate a version spec.

    Raises:
        InvalidVersion: Empty, malformed, or not allowed by ``fmt``.
    """
    text = (value or "").strip()
    allowed = _FORMAT_PARTS.get(fmt, _FORMAT_PARTS["any"])
    example = _FORMAT_EXAMPLES.get(fmt, _FORMAT_EXAMPLES["any"])

    if not text:
        raise InvalidVersion(f"{field} is empty", hint=f"Expected {example}", context={"field": field})

    match = _SPEC_RE.match(text)
    if match is None:
        raise InvalidVersion(
            f"Invalid {field}: {text!r}",
            hint=f"Expected {example}",
            context={"field": field, "value": text},
        )

    parts = tuple(int(g) for g in match.groups() if g is not None)
    if len(parts) not in allowed:
        raise InvalidVersion(
            f"Invalid {field}: {text!r} ({fmt} format)",
            hint=f"Expected {example}",
            context={"field": field, "value": text},
        )
    return VersionSpec(raw=text, parts=parts)


def parse_release(value: str) -> tuple[int, int, int] | None:
    """``X.Y.Z`` (optionally ``v``-prefixed) → tuple; pre-releases → None."""
    match = _RELEASE_RE.match(value.strip())
    if match is None:
        return None
    major, minor, patch = (int(g) for g in match.groups())
    return major, minor, patch


def matching_candidates(spec: VersionSpec, available: list[str], limit: int | None = None) -> list[str]:
    """Releases within ``spec``'s prefix, newest first, numerically ordered."""
    seen: dict[tuple[int, int, int], str] = {}
    for raw in available:
        release = parse_release(raw)
        if release is not None and spec.matches(release):
            seen.setdefault(release, "%d.%d.%d" % release)
    ordered = [seen[k] for k in sorted(seen, reverse=True)]
    return ordered[:limit] if limit else ordered


# ── Version sources ─────────────────────────────────────────────────


class VersionSource(ABC):
    """Lists a tool's released versions (any order, any spelling)."""

    strategy = ""

    def __init__(self, tool: ToolSpec, *, timeout: float = 30.0):
        self.tool = tool
        self.timeout = timeout

    @abstractmethod
    def list_versions(self, *, executor: RetryExecutor | None = None) -> list[str]:
        """Return raw version strings published by the vendor."""

    def _get(self, fn: Callable[[], Any], url: str, executor: RetryExecutor | None) -> Any:
        executor = executor or RetryExecutor()
        try:
            return executor.execute(fn, description=f"list versions {url}")
        except PermanentError as exc:
            logger.warning("Version listing unavailable for %s: %s", self.tool.name, exc)
            return None


_SOURCES: dict[str, type[VersionSource]] = {}


def register_source(name: str) -> Callable[[type[VersionSource]], type[VersionSource]]:
    def decorator(cls: type[VersionSource]) -> type[VersionSource]:
        cls.strategy = name
        _SOURCES[name] = cls
        return cls

    return decorator


def list_sources() -> list[str]:
    return sorted(_SOURCES)


def build_source(tool: ToolSpec, spec: StrategySpec, *, timeout: float = 30.0) -> VersionSource:
    """Raises ValueError for unknown strategies or bad options."""
    cls = _SOURCES.get(spec.strategy)
    if cls is None:
        raise ValueError(
            f"Unknown version source {spec.strategy!r} for {tool.name} "
            f"(available: {', '.join(list_sources())})"
        )
    try:
        return cls(tool, timeout=timeout, **spec.options)
    except TypeError as exc:
        raise ValueError(f"Invalid options for {spec.strategy} ({tool.name}): {exc}") from exc


@register_source("github_releases")
class GitHubReleasesSource(VersionSource):
    """Release tags from the GitHub API (drafts and pre-releases excluded)."""

    def __init__(
        self,
        tool: ToolSpec,
        *,
        repo: str,
        tag_prefix: str = "v",
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
    ):
        super().__init__(tool, timeout=timeout)
        self.repo = repo
        self.tag_prefix = tag_prefix
        self.api_url = api_url.rstrip("/")

    def list_versions(self, *, executor=None):
        url = f"{self.api_url}/repos/{self.repo}/releases?per_page=100"
        releases = self._get(lambda: http.fetch_json(url, timeout=self.timeout), url, executor)
        out = []
        for release in releases or []:
            if not isinstance(release, dict) or release.get("draft") or release.get("prerelease"):
                continue
            tag = str(release.get("tag_name", ""))
            if self.tag_prefix and tag.startswith(self.tag_prefix):
                tag = tag[len(self.tag_prefix):]
            out.append(tag)
        return out


@register_source("nodejs_index")
class NodeIndexSource(VersionSource):
    def __init__(
        self,
        tool: ToolSpec,
        *,
        index_url: str = "https://nodejs.org/dist/index.json",
        timeout: float = 30.0,
    ):
        super().__init__(tool, timeout=timeout)
        self.index_url = index_url

    def list_versions(self, *, executor=None):
        entries = self._get(lambda: http.fetch_json(self.index_url, timeout=self.timeout), self.index_url, executor)
        return [str(e.get("version", "")) for e in entries or [] if isinstance(e, dict)]


@register_source("python_ftp")
class PythonFtpSource(VersionSource):
    """Directory listing of python.org/ftp/python/ (``3.12.7/`` entries)."""

    _DIR_RE = re.compile(r'href="(\d+\.\d+\.\d+)/"')

    def __init__(
        self,
        tool: ToolSpec,
        *,
        listing_url: str = "https://www.python.org/ftp/python/",
        timeout: float = 30.0,
    ):
        super().__init__(tool, timeout=timeout)
        self.listing_url = listing_url

    def list_versions(self, *, executor=None):
        page = self._get(lambda: http.fetch_text(self.listing_url, timeout=self.timeout), self.listing_url, executor)
        return self._DIR_RE.findall(page or "")


@register_source("go_dl")
class GoDownloadsSource(VersionSource):
    def __init__(
        self,
        tool: ToolSpec,
        *,
        index_url: str = "https://go.dev/dl/?mode=json&include=all",
        timeout: float = 30.0,
    ):
        super().__init__(tool, timeout=timeout)
        self.index_url = index_url

    def list_versions(self, *, executor=None):
        releases = self._get(lambda: http.fetch_json(self.index_url, timeout=self.timeout), self.index_url, executor)
        out = []
        for release in releases or []:
            if isinstance(release, dict) and release.get("stable", True):
                out.append(str(release.get("version", "")).removeprefix("go"))
        return out


@register_source("ruby_downloads")
class RubyDownloadsSource(VersionSource):
    _RELEASE_RE = re.compile(r"Ruby (\d+\.\d+\.\d+)\b")

    def __init__(
        self,
        tool: ToolSpec,
        *,
        page_url: str = "https://www.ruby-lang.org/en/downloads/",
        timeout: float = 30.0,
    ):
        super().__init__(tool, timeout=timeout)
        self.page_url = page_url

    def list_versions(self, *, executor=None):
        page = self._get(lambda: http.fetch_text(self.page_url, timeout=self.timeout), self.page_url, executor)
        return self._RELEASE_RE.findall(page or "")


@register_source("static")
class StaticSource(VersionSource):
    """Versions listed in the config: ``versions: [1.2.3, 1.2.4]``."""

    def __init__(self, tool: ToolSpec, *, versions: list[Any] | None = None, timeout: float = 30.0):
        super().__init__(tool, timeout=timeout)
        self.versions = [str(v) for v in versions or []]

    def list_versions(self, *, executor=None):
        return list(self.versions)


# ── Resolver ────────────────────────────────────────────────────────


class VersionResolver:
    """Turn a request's version spec into a checksum-backed concrete version."""

    def __init__(
        self,
        provenance: ChecksumProvenanceResolver,
        *,
        tools: dict[str, ToolSpec] | None = None,
        max_candidates: int = 10,
    ):
        self.provenance = provenance
        self.tools = tools or {}
        self.max_candidates = max_candidates
        self._sources: dict[str, VersionSource] = {}

    def register(self, tool: str, source: VersionSource) -> None:
        self._sources[tool] = source

    def source(self, tool: str) -> VersionSource | None:
        return self._sources.get(tool)

    def field(self, tool: str) -> str:
        """Name of the setting that carries the version, e.g. ``NODE_VERSION``."""
        spec = self.tools.get(tool)
        return spec.version_variable if spec else f"{tool.upper().replace('-', '_')}_VERSION"

    def parse(self, tool: str, value: str | None) -> VersionSpec:
        spec = self.tools.get(tool)
        fmt = spec.version_format if spec else "any"
        return parse_version_spec(value, field=self.field(tool), fmt=fmt)

    def candidates(self, tool: str, spec: VersionSpec, *, executor: RetryExecutor | None = None) -> list[str]:
        source = self._sources.get(tool)
        if source is None:
            return []
        return matching_candidates(spec, source.list_versions(executor=executor), self.max_candidates)

    def resolve(self, request: ArtifactRequest, *, executor: RetryExecutor | None = None) -> ResolvedVersion:
        """Resolve ``request.version_spec``.

        Raises:
            InvalidVersion: Malformed spec, or no candidate in the prefix
                has a checksum from the GPG, Pinned or Published tier.
            NetworkExhausted, SignatureInvalid: Propagated from probing.
        """
        spec = self.parse(request.tool, request.version_spec)
        if spec.full:
            return ResolvedVersion(spec=request.version_spec, concrete=spec.text, tier=ResolutionTier.EXACT)

        field = self.field(request.tool)
        if request.tool not in self._sources:
            raise InvalidVersion(
                f"{field}={spec.raw} is partial and {request.tool} has no version source",
                hint="Specify a full X.Y.Z version.",
                context={"field": field, "value": spec.raw},
            )

        candidates = self.candidates(request.tool, spec, executor=executor)
        logger.debug("Candidates for %s %s: %s", request.tool, spec.raw, candidates)

        for candidate in candidates:
            record = self.provenance.try_resolve(request, candidate, executor=executor, include_computed=False)
            if record is None and not self.provenance.artifact_signature_published(
                request, candidate, executor=executor
            ):
                logger.info("Skipping %s %s: no verifiable checksum", request.tool, candidate)
                continue
            logger.info(
                "Resolved %s %s → %s (%s tier)",
                request.tool, spec.raw, candidate, record.tier.label if record else "GPG artifact signature",
            )
            return ResolvedVersion(
                spec=request.version_spec,
                concrete=candidate,
                tier=ResolutionTier.RESOLVED_LATEST_PATCH,
                record=record,
            )

        raise InvalidVersion(
            f"No verifiable {request.tool} release matches {field}={spec.raw}",
            hint="Pin a checksum for the wanted release or specify a full version.",
            context={"field": field, "value": spec.raw, "candidates": ", ".join(candidates) or "none"},
        )
