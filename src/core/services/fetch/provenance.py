"""
Checksum provenance — which digest to expect, and why we believe it.

Tiers, strongest first:

    1 GPG        vendor-signed manifest, verified against a trusted keyring,
                 or a signature over the artifact itself (checked after download)
    2 Pinned     known-good digest committed to checksums.yml
    3 Published  vendor checksum file/page, fetched over TLS
    4 Computed   hash of the download itself (integrity only, degraded)

Resolution stops at the first tier that answers, with one exception:
when a signed manifest and a pin disagree, the pin wins and the
disagreement is logged as a provenance conflict.  A pin is a reviewed
decision; a manifest can be re-signed upstream.

The Computed tier is never used when ``require_verified`` is set
(production builds) or when the tool disallows it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from src.core.models.artifact import ArtifactRequest, ChecksumRecord, Digest, TrustTier
from src.core.models.config import ToolSpec
from src.core.reliability.retry import RetryExecutor
from src.core.services.fetch import http
from src.core.services.fetch.digests import compute_digest
from src.core.services.fetch.errors import NetworkExhausted, Unresolved
from src.core.services.fetch.gpg import SignedArtifactSource, SignedManifestSource
from src.core.services.fetch.pinned import PinnedTable
from src.core.services.fetch.published import PublishedChecksumFetcher
from src.core.services.fetch.workspace import SecureWorkspace

logger = logging.getLogger(__name__)


class ChecksumProvenanceResolver:
    """Walk the trust ladder for one (tool, version, platform).

    Args:
        pinned: The pinned checksum table.
        require_verified: Disable the Computed tier entirely.
        tools: Tool specs, consulted for ``allow_computed``.
        timeout: Per-request timeout for Computed-tier downloads.
        workspace_dir: Parent directory for Computed-tier workspaces.
    """

    def __init__(
        self,
        pinned: PinnedTable | None = None,
        *,
        require_verified: bool = False,
        tools: dict[str, ToolSpec] | None = None,
        timeout: float = 30.0,
        workspace_dir: Path | None = None,
    ):
        self.pinned = pinned if pinned is not None else PinnedTable()
        self.require_verified = require_verified
        self.tools = tools or {}
        self.timeout = timeout
        self.workspace_dir = workspace_dir
        self._signed: dict[str, SignedManifestSource] = {}
        self._signed_artifacts: dict[str, SignedArtifactSource] = {}
        self._published: dict[str, PublishedChecksumFetcher] = {}

    # ── Registration ────────────────────────────────────────────

    def register(self, tool: str, fetcher: PublishedChecksumFetcher) -> None:
        """Attach a Published-tier fetcher to a tool (replaces any existing one)."""
        self._published[tool] = fetcher

    def register_signed(self, tool: str, source: SignedManifestSource) -> None:
        self._signed[tool] = source

    def register_signed_artifact(self, tool: str, source: SignedArtifactSource) -> None:
        self._signed_artifacts[tool] = source

    def published_fetcher(self, tool: str) -> PublishedChecksumFetcher | None:
        return self._published.get(tool)

    def signed_source(self, tool: str) -> SignedManifestSource | None:
        return self._signed.get(tool)

    def signed_artifact(self, tool: str) -> SignedArtifactSource | None:
        return self._signed_artifacts.get(tool)

    def computed_allowed(self, tool: str) -> bool:
        if self.require_verified:
            return False
        spec = self.tools.get(tool)
        return spec.allow_computed if spec is not None else True

    # ── Resolution ──────────────────────────────────────────────

    def resolve(
        self,
        request: ArtifactRequest,
        version: str,
        *,
        executor: RetryExecutor | None = None,
        include_computed: bool = True,
    ) -> ChecksumRecord:
        """Return the expected digest for ``request`` at ``version``.

        Raises:
            Unresolved: No tier produced a digest.
            NetworkExhausted: No tier produced a digest and at least one
                tier failed on the network.
            SignatureInvalid: A vendor signature was rejected by gpg.
        """
        executor = executor or RetryExecutor()
        tool, platform = request.tool, request.platform
        filename = request.filename(version)
        tried: list[str] = []
        network_failure: NetworkExhausted | None = None

        # ── Tier 1: GPG ──
        gpg_digest: Digest | None = None
        source = self._signed.get(tool)
        if source is not None:
            tried.append(TrustTier.GPG.label)
            try:
                gpg_digest = source.fetch(version, platform, filename, executor=executor)
            except NetworkExhausted as exc:
                logger.warning("⚠ GPG tier unreachable for %s %s: %s", tool, version, exc.message)
                network_failure = exc

        # ── Tier 2: Pinned ──
        tried.append(TrustTier.PINNED.label)
        pinned = self.pinned.lookup(tool, version, platform)

        if gpg_digest is not None:
            if pinned is not None and not pinned.matches(gpg_digest):
                logger.warning(
                    "⚠ Provenance conflict for %s %s %s: signed manifest says %s, pinned table says %s; using pinned",
                    tool, version, platform.key, gpg_digest, pinned,
                )
                return self._record(request, version, pinned, TrustTier.PINNED, self._pinned_source())
            return self._record(
                request, version, gpg_digest, TrustTier.GPG, source.describe(version, platform)
            )

        if pinned is not None:
            return self._record(request, version, pinned, TrustTier.PINNED, self._pinned_source())

        # ── Tier 3: Published ──
        fetcher = self._published.get(tool)
        if fetcher is not None:
            tried.append(TrustTier.PUBLISHED.label)
            try:
                published = fetcher.fetch(version, platform, filename, executor=executor)
            except NetworkExhausted as exc:
                logger.warning("⚠ Published tier unreachable for %s %s: %s", tool, version, exc.message)
                network_failure = exc
                published = None
            if published is not None:
                return self._record(
                    request, version, published, TrustTier.PUBLISHED, fetcher.describe(version, platform)
                )

        # ── Tier 4: Computed ──
        if include_computed and self.computed_allowed(tool):
            tried.append(TrustTier.COMPUTED.label)
            return self._compute(request, version, executor)

        if network_failure is not None:
            raise network_failure

        raise self.unresolved(request, version, tried)

    def unresolved(self, request: ArtifactRequest, version: str, tried: list[str]) -> Unresolved:
        tool, platform = request.tool, request.platform
        return Unresolved(
            f"No checksum available for {tool} {version} ({platform.key})",
            hint=(
                f"Pin one with 'devfetch pins add {tool} {version} {platform.key} <digest>'"
                if self.require_verified or not self.computed_allowed(tool)
                else "Configure a published checksum strategy or pin the digest."
            ),
            context={"tool": tool, "version": version, "platform": platform.key, "tiers_tried": ", ".join(tried)},
        )

    def try_resolve(
        self,
        request: ArtifactRequest,
        version: str,
        *,
        executor: RetryExecutor | None = None,
        include_computed: bool = False,
    ) -> ChecksumRecord | None:
        """``resolve`` that answers None instead of raising ``Unresolved``."""
        try:
            return self.resolve(request, version, executor=executor, include_computed=include_computed)
        except Unresolved:
            return None

    def artifact_signature_published(
        self,
        request: ArtifactRequest,
        version: str,
        *,
        executor: RetryExecutor | None = None,
    ) -> bool:
        """Whether ``version`` can be authenticated by a signature over the artifact."""
        source = self._signed_artifacts.get(request.tool)
        if source is None:
            return False
        try:
            return source.signature_published(version, request.platform, executor=executor)
        except NetworkExhausted as exc:
            if exc.reason == "deadline":
                raise
            logger.warning("⚠ GPG tier unreachable for %s %s: %s", request.tool, version, exc.message)
            return False

    def verify_signed_artifact(
        self,
        request: ArtifactRequest,
        version: str,
        path: Path,
        *,
        executor: RetryExecutor | None = None,
    ) -> ChecksumRecord | None:
        """GPG-tier record for a downloaded file whose own signature is good.

        Returns None when the tool has no artifact signature or it cannot
        be checked here.

        Raises:
            SignatureInvalid: gpg rejected the signature.
        """
        source = self._signed_artifacts.get(request.tool)
        if source is None:
            return None
        try:
            good = source.verify(path, version, request.platform, executor=executor)
        except NetworkExhausted as exc:
            if exc.reason == "deadline":
                raise
            logger.warning("⚠ GPG tier unreachable for %s %s: %s", request.tool, version, exc.message)
            return None
        if not good:
            return None
        return self._record(
            request, version, compute_digest(path, "sha256"), TrustTier.GPG, source.describe(version, request.platform)
        )

    def computed_record(self, request: ArtifactRequest, version: str, path: Path) -> ChecksumRecord:
        """Degraded record for an artifact that is already on disk."""
        digest = compute_digest(path, "sha256")
        return self._record(
            request, version, digest, TrustTier.COMPUTED, f"computed from {request.render_url(version)}"
        )

    # ── Internals ───────────────────────────────────────────────

    def _compute(self, request: ArtifactRequest, version: str, executor: RetryExecutor) -> ChecksumRecord:
        url = request.render_url(version)
        with SecureWorkspace.create(prefix=f"{request.tool}-computed-", base_dir=self.workspace_dir) as ws:
            target = ws.file(request.filename(version))
            executor.execute(
                lambda: http.download_to(
                    url, target, timeout=self.timeout, cancel=executor.cancel, deadline=executor.deadline
                ),
                description=f"download {url}",
            )
            return self.computed_record(request, version, target)

    def _pinned_source(self) -> str:
        return f"pinned table {self.pinned.path}" if self.pinned.path else "pinned table"

    def _record(
        self,
        request: ArtifactRequest,
        version: str,
        digest: Digest,
        tier: TrustTier,
        source: str,
    ) -> ChecksumRecord:
        record = ChecksumRecord(
            tool=request.tool,
            version=version,
            platform=request.platform,
            digest=digest,
            tier=tier,
            source=source,
        )
        if record.degraded:
            logger.warning(
                "⚠ DEGRADED: %s %s (%s) has no authentic checksum; using computed %s "
                "(integrity only, not authenticity)",
                request.tool, version, request.platform.key, digest,
            )
        else:
            logger.info(
                "Checksum for %s %s (%s) from %s tier: %s",
                request.tool, version, request.platform.key, tier.label, source,
            )
        return record
