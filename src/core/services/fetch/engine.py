"""
Download-and-verify engine — nothing leaves here unverified.

    with engine.fetch(request) as artifact:
        handoff.install_to(artifact, Path("/usr/local/bin/tool"))
    # workspace (and the downloaded file) are gone here

State machine::

    RESOLVING_VERSION → RESOLVING_CHECKSUM → DOWNLOADING → VERIFYING → VERIFIED
            ↘                  ↘                  ↘             ↘
                                   FAILED

Every ``fetch()`` gets its own workspace, resolves its version and
checksum exactly once, and writes one audit entry when it terminates.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from src.core.models.artifact import (
    ArtifactRequest,
    ChecksumRecord,
    DownloadAttempt,
    FetchState,
    ResolutionTier,
    ResolvedVersion,
    TrustTier,
    VerifiedArtifact,
)
from src.core.persistence.audit import AuditEntry, AuditWriter
from src.core.reliability.retry import Deadline, RetryExecutor, RetryPolicy
from src.core.services.fetch import http
from src.core.services.fetch.digests import compute_digest
from src.core.services.fetch.errors import (
    ChecksumMismatch,
    DownloadFailed,
    FetchError,
    NetworkExhausted,
    PermanentError,
    SignatureInvalid,
    TransientError,
    Unresolved,
)
from src.core.services.fetch.provenance import ChecksumProvenanceResolver
from src.core.services.fetch.versions import VersionResolver
from src.core.services.fetch.workspace import SecureWorkspace

logger = logging.getLogger(__name__)


class DownloadAndVerifyEngine:
    """Orchestrates version, checksum, download and verification.

    Args:
        versions: Version resolver (shares ``provenance``).
        provenance: Checksum provenance resolver.
        policy: Retry policy for every network call of one artifact.
        timeout: Per-request timeout in seconds.
        deadline: Overall budget per artifact in seconds (None = unbounded).
        workspace_dir: Parent for workspaces (default: system temp dir).
        audit: Ledger for terminal outcomes (None = no ledger).
    """

    def __init__(
        self,
        versions: VersionResolver,
        provenance: ChecksumProvenanceResolver,
        *,
        policy: RetryPolicy | None = None,
        timeout: float = 30.0,
        deadline: float | None = None,
        workspace_dir: Path | None = None,
        audit: AuditWriter | None = None,
    ):
        self.versions = versions
        self.provenance = provenance
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.deadline = deadline
        self.workspace_dir = workspace_dir
        self.audit = audit
        self.last_attempt: DownloadAttempt | None = None

    @contextmanager
    def fetch(
        self,
        request: ArtifactRequest,
        *,
        cancel: threading.Event | None = None,
    ) -> Iterator[VerifiedArtifact]:
        """Yield a verified artifact; destroy its workspace on exit.

        Raises:
            InvalidVersion, UnsupportedPlatform, Unresolved, NetworkExhausted,
            DownloadFailed, ChecksumMismatch, SignatureInvalid, FetchCancelled
        """
        attempt = DownloadAttempt(request=request)
        self.last_attempt = attempt
        executor = RetryExecutor(self.policy, cancel=cancel, deadline=Deadline(self.deadline))

        with SecureWorkspace.create(prefix=f"devfetch-{request.tool}-", base_dir=self.workspace_dir) as ws:
            attempt.workspace_path = ws.path
            try:
                artifact = self._acquire(request, attempt, ws, executor)
            except Exception as exc:
                attempt.last_error = str(exc)
                self._transition(attempt, FetchState.FAILED)
                self._write_audit(attempt, error=exc)
                raise

            self._write_audit(attempt, artifact=artifact)
            yield artifact

    # ── Stages ──────────────────────────────────────────────────

    def _acquire(
        self,
        request: ArtifactRequest,
        attempt: DownloadAttempt,
        ws: SecureWorkspace,
        executor: RetryExecutor,
    ) -> VerifiedArtifact:
        logger.debug("fetch %s %s (%s)", request.tool, request.version_spec, request.platform.key)
        resolved = self.versions.resolve(request, executor=executor)
        attempt.resolved = resolved

        self._transition(attempt, FetchState.RESOLVING_CHECKSUM)
        record = resolved.record
        if record is None:
            record = self._resolve_checksum(request, resolved, executor)
        attempt.record = record

        self._transition(attempt, FetchState.DOWNLOADING)
        target = ws.file(request.filename(resolved.concrete))
        size = self._download(request, resolved, target, attempt, executor)

        self._transition(attempt, FetchState.VERIFYING)
        try:
            signed = self.provenance.verify_signed_artifact(request, resolved.concrete, target, executor=executor)
        except SignatureInvalid:
            target.unlink(missing_ok=True)
            raise
        if record is None:
            record = signed or self._unsigned_record(request, resolved, target)
            attempt.record = record
        actual = compute_digest(target, record.digest.algorithm)

        if not actual.matches(record.digest):
            target.unlink(missing_ok=True)
            logger.error(
                "✗ Checksum mismatch for %s %s (%s): expected %s, got %s [%s tier: %s]",
                request.tool, resolved.concrete, request.platform.key,
                record.digest, actual, record.tier.label, record.source,
            )
            raise ChecksumMismatch(
                f"Checksum mismatch for {target.name}",
                expected=str(record.digest),
                actual=str(actual),
                hint="The download is corrupt or has been tampered with. Do not retry blindly.",
                context={"tool": request.tool, "version": resolved.concrete, "tier": record.tier.label},
            )
        if signed is not None and record.tier > TrustTier.GPG:
            record = signed
            attempt.record = record

        self._transition(attempt, FetchState.VERIFIED)
        log = logger.warning if record.degraded else logger.info
        log(
            "verified tool=%s version=%s platform=%s tier=%s source=%s digest=%s%s",
            request.tool, resolved.concrete, request.platform.key,
            record.tier.label, record.source, actual,
            " DEGRADED" if record.degraded else "",
        )
        return VerifiedArtifact(
            path=target,
            request=request,
            resolved=resolved,
            record=record,
            actual=actual,
            size=size,
        )

    def _resolve_checksum(
        self,
        request: ArtifactRequest,
        resolved: ResolvedVersion,
        executor: RetryExecutor,
    ) -> ChecksumRecord | None:
        """Record from tiers 1-3, or None when the download itself must be checked."""
        try:
            return self.provenance.resolve(request, resolved.concrete, executor=executor, include_computed=False)
        except (Unresolved, NetworkExhausted) as exc:
            if isinstance(exc, NetworkExhausted) and exc.reason == "deadline":
                raise
            if self.provenance.signed_artifact(request.tool) is not None:
                logger.debug("%s %s: deferring to its artifact signature", request.tool, resolved.concrete)
                return None
            if not self.provenance.computed_allowed(request.tool):
                raise
            return None

    def _unsigned_record(
        self,
        request: ArtifactRequest,
        resolved: ResolvedVersion,
        target: Path,
    ) -> ChecksumRecord:
        """Computed record for a download nothing vouched for, where allowed.

        A partial spec resolved without a record was chosen for its
        artifact signature, so it never falls back.
        """
        version = resolved.concrete
        if resolved.tier == ResolutionTier.RESOLVED_LATEST_PATCH or not self.provenance.computed_allowed(request.tool):
            tried = [TrustTier.GPG.label, TrustTier.PINNED.label]
            if self.provenance.published_fetcher(request.tool) is not None:
                tried.append(TrustTier.PUBLISHED.label)
            raise self.provenance.unresolved(request, version, tried)
        logger.warning(
            "⚠ No authentic checksum for %s %s; falling back to computed digest",
            request.tool, version,
        )
        return self.provenance.computed_record(request, version, target)

    def _download(
        self,
        request: ArtifactRequest,
        resolved: ResolvedVersion,
        target: Path,
        attempt: DownloadAttempt,
        executor: RetryExecutor,
    ) -> int:
        url = request.render_url(resolved.concrete)
        calls = 0

        def _once() -> int:
            nonlocal calls
            calls += 1
            target.unlink(missing_ok=True)
            return http.download_to(
                url, target, timeout=self.timeout, cancel=executor.cancel, deadline=executor.deadline
            )

        def _on_failure(n: int, error: TransientError) -> None:
            attempt.record_failure(n, error)

        try:
            size = executor.execute(_once, description=f"download {url}", on_failure=_on_failure)
        except PermanentError as exc:
            attempt.attempt_count = calls
            raise DownloadFailed(
                f"Cannot download {request.tool} {resolved.concrete}: {exc}",
                hint="Check the version exists for this platform.",
                context={"url": url, "status": exc.status},
            ) from exc
        attempt.attempt_count = calls
        logger.debug("Downloaded %d bytes from %s in %d attempt(s)", size, url, calls)
        return size

    # ── Bookkeeping ─────────────────────────────────────────────

    @staticmethod
    def _transition(attempt: DownloadAttempt, state: FetchState) -> None:
        logger.debug("%s: %s → %s", attempt.request.tool, attempt.state.value, state.value)
        attempt.transition(state)

    def _write_audit(
        self,
        attempt: DownloadAttempt,
        *,
        artifact: VerifiedArtifact | None = None,
        error: BaseException | None = None,
    ) -> None:
        if self.audit is None:
            return
        request = attempt.request
        resolved = attempt.resolved
        record = attempt.record
        entry = AuditEntry(
            tool=request.tool,
            version_spec=request.version_spec,
            version=resolved.concrete if resolved else "",
            platform=request.platform.key,
            url=request.render_url(resolved.concrete) if resolved else "",
            tier=record.tier.label if record else "",
            source=record.source if record else "",
            digest=str(artifact.actual if artifact else record.digest) if (artifact or record) else "",
            degraded=bool(record and record.degraded),
            outcome=attempt.outcome.value,
            state=(attempt.history[-1] if error is not None and attempt.history else attempt.state).value,
            attempts=attempt.attempt_count,
            duration_ms=attempt.elapsed_ms,
            error_code=error.code if isinstance(error, FetchError) else (type(error).__name__ if error else ""),
            error=str(error.message if isinstance(error, FetchError) else error) if error else "",
        )
        self.audit.write(entry)
