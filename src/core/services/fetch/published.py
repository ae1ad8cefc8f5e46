"""
Published tier — checksums the vendor publishes next to its releases.

Each tool names a strategy in its ``published:`` block; the strategy
class is looked up in a registry that other modules (or feature
packages) can extend::

    @register_fetcher("my_vendor")
    class MyVendorFetcher(PublishedChecksumFetcher):
        def fetch(self, version, platform, filename, *, executor=None): ...

Built-in strategies:

    checksums_file   checksums.txt / SHA256SUMS / SHASUMS256.txt manifest
    sidecar          <artifact-url>.sha256 or .sha512
    go_dl            go.dev JSON release index
    ruby_downloads   ruby-lang.org downloads page
    static           digests written directly into the config
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from src.core.models.artifact import Digest, Platform
from src.core.models.config import StrategySpec, ToolSpec
from src.core.reliability.retry import RetryExecutor
from src.core.services.fetch import http
from src.core.services.fetch.digests import find_manifest_digest, first_token_digest
from src.core.services.fetch.errors import PermanentError
from src.core.services.fetch.platform import template_vars

logger = logging.getLogger(__name__)


# ── Base ────────────────────────────────────────────────────────────


class PublishedChecksumFetcher(ABC):
    """Capability: look up the vendor-published digest of one artifact.

    ``fetch`` returns None when the vendor publishes nothing for the
    artifact (404, no matching entry).  Transient failures are retried
    through ``executor`` and surface as ``NetworkExhausted``.
    """

    strategy = ""

    def __init__(self, tool: ToolSpec, *, timeout: float = 30.0):
        self.tool = tool
        self.timeout = timeout

    @abstractmethod
    def fetch(
        self,
        version: str,
        platform: Platform,
        filename: str,
        *,
        executor: RetryExecutor | None = None,
    ) -> Digest | None:
        """Return the published digest for ``filename``, or None."""

    def describe(self, version: str, platform: Platform) -> str:
        return f"published ({self.strategy})"

    # ── Helpers ─────────────────────────────────────────────────

    def render(self, template: str, version: str, platform: Platform, **extra: str) -> str:
        values = template_vars(self.tool, version, platform)
        values.update(extra)
        return template.format(**values)

    def get_text(self, url: str, executor: RetryExecutor | None) -> str | None:
        """GET through the retry executor; None on a permanent failure."""
        executor = executor or RetryExecutor()
        try:
            return executor.execute(
                lambda: http.fetch_text(url, timeout=self.timeout),
                description=f"fetch {url}",
            )
        except PermanentError as exc:
            logger.debug("%s: %s", self.strategy, exc)
            return None

    def get_json(self, url: str, executor: RetryExecutor | None) -> Any:
        executor = executor or RetryExecutor()
        try:
            return executor.execute(
                lambda: http.fetch_json(url, timeout=self.timeout),
                description=f"fetch {url}",
            )
        except PermanentError as exc:
            logger.debug("%s: %s", self.strategy, exc)
            return None


# ── Registry ────────────────────────────────────────────────────────


_FETCHERS: dict[str, type[PublishedChecksumFetcher]] = {}


def register_fetcher(name: str) -> Callable[[type[PublishedChecksumFetcher]], type[PublishedChecksumFetcher]]:
    """Class decorator adding a strategy to the registry."""

    def decorator(cls: type[PublishedChecksumFetcher]) -> type[PublishedChecksumFetcher]:
        cls.strategy = name
        _FETCHERS[name] = cls
        return cls

    return decorator


def get_fetcher_class(name: str) -> type[PublishedChecksumFetcher] | None:
    return _FETCHERS.get(name)


def list_fetchers() -> list[str]:
    return sorted(_FETCHERS)


def build_fetcher(tool: ToolSpec, spec: StrategySpec, *, timeout: float = 30.0) -> PublishedChecksumFetcher:
    """Instantiate the strategy a tool's ``published:`` block names.

    Raises:
        ValueError: Unknown strategy or invalid options.
    """
    cls = get_fetcher_class(spec.strategy)
    if cls is None:
        raise ValueError(
            f"Unknown checksum strategy {spec.strategy!r} for {tool.name} "
            f"(available: {', '.join(list_fetchers())})"
        )
    try:
        return cls(tool, timeout=timeout, **spec.options)
    except TypeError as exc:
        raise ValueError(f"Invalid options for {spec.strategy} ({tool.name}): {exc}") from exc


# ── Strategies ──────────────────────────────────────────────────────


@register_fetcher("checksums_file")
class ChecksumsFileFetcher(PublishedChecksumFetcher):
    """One manifest per release, one line per artifact.

    Options: ``url`` (template; ``{version}``, ``{os}``, ``{arch}``).
    """

    def __init__(self, tool: ToolSpec, *, url: str, timeout: float = 30.0):
        super().__init__(tool, timeout=timeout)
        self.url = url

    def describe(self, version: str, platform: Platform) -> str:
        return f"published manifest {self.render(self.url, version, platform)}"

    def fetch(self, version, platform, filename, *, executor=None):
        url = self.render(self.url, version, platform, filename=filename)
        text = self.get_text(url, executor)
        if text is None:
            return None
        try:
            return find_manifest_digest(text, filename)
        except ValueError as exc:
            logger.warning("Ignoring ambiguous manifest %s: %s", url, exc)
            return None


@register_fetcher("sidecar")
class SidecarFetcher(PublishedChecksumFetcher):
    """Per-artifact checksum file (``<artifact>.sha256``, Maven Central style).

    Options: ``url`` (template; ``{url}`` is the artifact URL, default
    ``{url}.sha256``) and ``algorithm`` (``sha256``/``sha512``).
    """

    def __init__(
        self,
        tool: ToolSpec,
        *,
        url: str = "{url}.sha256",
        algorithm: str = "sha256",
        timeout: float = 30.0,
    ):
        super().__init__(tool, timeout=timeout)
        if algorithm not in ("sha256", "sha512"):
            raise TypeError(f"unsupported algorithm {algorithm!r}")
        self.url = url
        self.algorithm = algorithm

    def _sidecar_url(self, version: str, platform: Platform, filename: str) -> str:
        artifact_url = self.render(self.tool.url, version, platform)
        return self.render(self.url, version, platform, url=artifact_url, filename=filename)

    def describe(self, version: str, platform: Platform) -> str:
        return f"published sidecar {self._sidecar_url(version, platform, '')}"

    def fetch(self, version, platform, filename, *, executor=None):
        text = self.get_text(self._sidecar_url(version, platform, filename), executor)
        if text is None:
            return None
        return first_token_digest(text, self.algorithm)


@register_fetcher("go_dl")
class GoDownloadsFetcher(PublishedChecksumFetcher):
    """go.dev release index: ``[{version, files: [{filename, sha256}]}]``."""

    def __init__(
        self,
        tool: ToolSpec,
        *,
        index_url: str = "https://go.dev/dl/?mode=json&include=all",
        timeout: float = 30.0,
    ):
        super().__init__(tool, timeout=timeout)
        self.index_url = index_url

    def describe(self, version: str, platform: Platform) -> str:
        return f"published index {self.index_url}"

    def fetch(self, version, platform, filename, *, executor=None):
        releases = self.get_json(self.index_url, executor)
        if not isinstance(releases, list):
            return None
        wanted = f"go{version}"
        for release in releases:
            if not isinstance(release, dict) or release.get("version") != wanted:
                continue
            files = release.get("files")
            for entry in files if isinstance(files, list) else []:
                if not isinstance(entry, dict) or entry.get("filename") != filename:
                    continue
                value = entry.get("sha256")
                if isinstance(value, str) and Digest.is_valid(value, "sha256"):
                    return Digest.parse(value)
        return None


@register_fetcher("ruby_downloads")
class RubyDownloadsFetcher(PublishedChecksumFetcher):
    """ruby-lang.org downloads page: ``Ruby X.Y.Z`` heading, then ``sha256: <hex>``."""

    def __init__(
        self,
        tool: ToolSpec,
        *,
        page_url: str = "https://www.ruby-lang.org/en/downloads/",
        timeout: float = 30.0,
    ):
        super().__init__(tool, timeout=timeout)
        self.page_url = page_url

    def describe(self, version: str, platform: Platform) -> str:
        return f"published page {self.page_url}"

    def fetch(self, version, platform, filename, *, executor=None):
        text = self.get_text(self.page_url, executor)
        if text is None:
            return None
        return find_ruby_digest(text, version)


def find_ruby_digest(page: str, version: str) -> Digest | None:
    """The ``sha256:`` that follows ``>Ruby <version><`` on the downloads page."""
    pattern = re.compile(
        r">Ruby " + re.escape(version) + r"<.{0,400}?sha256:\s*([0-9a-fA-F]{64})",
        re.DOTALL,
    )
    match = pattern.search(page)
    return Digest.parse(match.group(1)) if match else None


@register_fetcher("static")
class StaticFetcher(PublishedChecksumFetcher):
    """Digests given inline: ``digests: {version: {platform-key: digest}}``.

    A version may also map directly to one digest (platform-independent
    source archives).
    """

    def __init__(
        self,
        tool: ToolSpec,
        *,
        digests: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ):
        super().__init__(tool, timeout=timeout)
        self.digests = {str(k): v for k, v in (digests or {}).items()}

    def describe(self, version: str, platform: Platform) -> str:
        return "published (static config)"

    def fetch(self, version, platform, filename, *, executor=None):
        entry = self.digests.get(version)
        if isinstance(entry, dict):
            entry = entry.get(platform.key)
        if not entry:
            return None
        try:
            return Digest.parse(str(entry))
        except ValueError:
            logger.warning("Invalid static digest for %s %s: %r", self.tool.name, version, entry)
            return None
