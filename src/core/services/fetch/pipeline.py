"""
Fetch pipeline — every component wired from one ``FetchConfig``.

    pipeline = FetchPipeline.from_config(load_config())
    with pipeline.acquire("node", "20") as artifact:
        handoff.extract(artifact, Path("/usr/local"), strip_components=1)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

from src.core.context import BuildContext
from src.core.models.artifact import ArtifactRequest, ChecksumRecord, Platform, ResolvedVersion, VerifiedArtifact
from src.core.models.config import FetchConfig, ToolSpec
from src.core.persistence.audit import AuditWriter
from src.core.reliability.retry import Deadline, RetryExecutor, RetryPolicy
from src.core.services.fetch.engine import DownloadAndVerifyEngine
from src.core.services.fetch.errors import InvalidInput, Unresolved
from src.core.services.fetch.gpg import GpgVerifier, SignedArtifactSource, SignedManifestSource
from src.core.services.fetch.pinned import PinnedTable
from src.core.services.fetch.provenance import ChecksumProvenanceResolver
from src.core.services.fetch.published import build_fetcher
from src.core.services.fetch.versions import VersionResolver, build_source

logger = logging.getLogger(__name__)


class FetchPipeline:
    """Facade over version, provenance and engine for configured tools."""

    def __init__(
        self,
        config: FetchConfig,
        *,
        pinned: PinnedTable,
        provenance: ChecksumProvenanceResolver,
        versions: VersionResolver,
        engine: DownloadAndVerifyEngine,
    ):
        self.config = config
        self.pinned = pinned
        self.provenance = provenance
        self.versions = versions
        self.engine = engine

    @classmethod
    def from_config(cls, config: FetchConfig, *, pinned: PinnedTable | None = None) -> FetchPipeline:
        settings = config.settings
        workspace_dir = config.resolve_path(settings.workspace_dir)
        pinned = pinned if pinned is not None else PinnedTable.load(config.pinned_table_path)

        provenance = ChecksumProvenanceResolver(
            pinned,
            require_verified=settings.require_verified,
            tools=config.tools,
            timeout=settings.timeout,
            workspace_dir=workspace_dir,
        )
        versions = VersionResolver(provenance, tools=config.tools, max_candidates=settings.max_candidates)
        verifier = GpgVerifier(config.keyring_path, workspace_dir=workspace_dir)

        for name, tool in config.tools.items():
            if tool.gpg is not None and tool.gpg.mode == "artifact":
                provenance.register_signed_artifact(
                    name, SignedArtifactSource(tool, tool.gpg, verifier, timeout=settings.timeout)
                )
            elif tool.gpg is not None:
                provenance.register_signed(name, SignedManifestSource(tool, tool.gpg, verifier, timeout=settings.timeout))
            if tool.published is not None:
                provenance.register(name, build_fetcher(tool, tool.published, timeout=settings.timeout))
            if tool.versions is not None:
                versions.register(name, build_source(tool, tool.versions, timeout=settings.timeout))

        audit_path = config.audit_log_path
        engine = DownloadAndVerifyEngine(
            versions,
            provenance,
            policy=RetryPolicy.from_settings(settings.retry),
            timeout=settings.timeout,
            deadline=settings.deadline,
            workspace_dir=workspace_dir,
            audit=AuditWriter(audit_path) if audit_path else None,
        )
        logger.debug(
            "Pipeline ready: %d tools, %d pins, require_verified=%s",
            len(config.tools), len(pinned), settings.require_verified,
        )
        return cls(config, pinned=pinned, provenance=provenance, versions=versions, engine=engine)

    # ── Lookups ─────────────────────────────────────────────────

    def tool(self, name: str) -> ToolSpec:
        spec = self.config.tool(name)
        if spec is None:
            raise InvalidInput(
                f"Unknown tool: {name!r}",
                hint=f"Configured tools: {', '.join(sorted(self.config.tools))}",
                context={"field": "tool"},
            )
        return spec

    def context(
        self,
        tool: str,
        version_spec: str | None = None,
        *,
        platform: str | Platform | None = None,
        destination: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> BuildContext:
        return BuildContext.from_env(
            self.tool(tool),
            env=env,
            version_spec=version_spec,
            platform=platform,
            destination=destination,
        )

    def request(self, tool: str, version_spec: str | None = None, **kwargs) -> ArtifactRequest:
        return self.context(tool, version_spec, **kwargs).to_request(self.tool(tool))

    def executor(self, cancel: threading.Event | None = None) -> RetryExecutor:
        return RetryExecutor(
            RetryPolicy.from_settings(self.config.settings.retry),
            cancel=cancel,
            deadline=Deadline(self.config.settings.deadline),
        )

    # ── Operations ──────────────────────────────────────────────

    def resolve_version(self, request: ArtifactRequest) -> ResolvedVersion:
        return self.versions.resolve(request, executor=self.executor())

    def resolve_checksum(self, request: ArtifactRequest, version: str) -> ChecksumRecord:
        return self.provenance.resolve(request, version, executor=self.executor())

    def authentic_checksum(self, request: ArtifactRequest, version: str) -> ChecksumRecord:
        """Record from the GPG, Pinned or Published tier, never Computed.

        Tools that sign the artifact itself have no digest until the
        artifact is downloaded and its signature checked, so those are
        fetched through the engine.
        """
        try:
            return self.provenance.resolve(request, version, executor=self.executor(), include_computed=False)
        except Unresolved:
            if self.provenance.signed_artifact(request.tool) is None:
                raise
        with self.engine.fetch(request.model_copy(update={"version_spec": version})) as artifact:
            if artifact.degraded:
                raise self.provenance.unresolved(request, version, [artifact.record.tier.label])
            return artifact.record

    @contextmanager
    def acquire(
        self,
        tool: str,
        version_spec: str | None = None,
        *,
        platform: str | Platform | None = None,
        env: Mapping[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[VerifiedArtifact]:
        """Resolve, download and verify ``tool``; yield the verified artifact."""
        request = self.request(tool, version_spec, platform=platform, env=env)
        with self.engine.fetch(request, cancel=cancel) as artifact:
            yield artifact
