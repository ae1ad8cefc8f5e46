"""
Artifact models — what is being fetched and how far it can be trusted.

An ``ArtifactRequest`` names a tool, a version spec and a platform.
The version resolver turns the spec into a ``ResolvedVersion``; the
provenance resolver produces a ``ChecksumRecord`` for it; the engine
tracks its progress in a ``DownloadAttempt``.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")

# hex length → algorithm
_ALGORITHM_BY_LENGTH = {64: "sha256", 128: "sha512"}
_LENGTH_BY_ALGORITHM = {v: k for k, v in _ALGORITHM_BY_LENGTH.items()}


# ── Platform ─────────────────────────────────────────────────────


class Platform(BaseModel):
    """Target OS + architecture, in normalized names (``linux``/``amd64``)."""

    model_config = ConfigDict(frozen=True)

    os: str = "linux"
    arch: str

    @property
    def key(self) -> str:
        """Table key, e.g. ``linux-amd64``."""
        return f"{self.os}-{self.arch}"

    def __str__(self) -> str:
        return self.key


# ── Digest ───────────────────────────────────────────────────────


class Digest(BaseModel):
    """A hex-encoded SHA-256 or SHA-512 digest."""

    model_config = ConfigDict(frozen=True)

    algorithm: str
    hex: str

    @classmethod
    def parse(cls, value: str) -> Digest:
        """Parse ``algo:hex`` or bare hex (algorithm inferred from length).

        Raises:
            ValueError: If the value is not a valid sha256/sha512 digest.
        """
        text = (value or "").strip()
        algorithm = ""
        if ":" in text:
            algorithm, text = text.split(":", 1)
            algorithm = algorithm.strip().lower()
            text = text.strip()

        if not text or not _HEX_RE.match(text):
            raise ValueError(f"Not a hex digest: {value!r}")

        inferred = _ALGORITHM_BY_LENGTH.get(len(text))
        if inferred is None:
            raise ValueError(
                f"Invalid digest length {len(text)} (expected 64 for sha256 or 128 for sha512)"
            )
        if algorithm and algorithm != inferred:
            raise ValueError(f"Digest length {len(text)} does not match algorithm {algorithm!r}")

        return cls(algorithm=inferred, hex=text.lower())

    @classmethod
    def is_valid(cls, value: str, algorithm: str | None = None) -> bool:
        """Check a digest string without raising."""
        try:
            digest = cls.parse(value)
        except ValueError:
            return False
        return algorithm is None or digest.algorithm == algorithm

    @property
    def expected_length(self) -> int:
        return _LENGTH_BY_ALGORITHM[self.algorithm]

    def matches(self, other: Digest) -> bool:
        return self.algorithm == other.algorithm and self.hex == other.hex

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"


# ── Request ──────────────────────────────────────────────────────


class ArtifactRequest(BaseModel):
    """One artifact to acquire.  Immutable for the lifetime of an attempt.

    ``url_template`` may use ``{version}``, ``{series}``, ``{os}`` and ``{arch}``;
    vendor spellings of the platform (``x64``, ``x86_64``, ``Linux``)
    come from ``arch_aliases`` / ``os_aliases``.
    """

    model_config = ConfigDict(frozen=True)

    tool: str
    version_spec: str
    platform: Platform
    url_template: str
    arch_aliases: dict[str, str] = Field(default_factory=dict)
    os_aliases: dict[str, str] = Field(default_factory=dict)

    def template_vars(self, version: str) -> dict[str, str]:
        return {
            "version": version,
            "series": ".".join(version.split(".")[:2]),
            "os": self.os_aliases.get(self.platform.os, self.platform.os),
            "arch": self.arch_aliases.get(self.platform.arch, self.platform.arch),
        }

    def render_url(self, version: str) -> str:
        return self.url_template.format(**self.template_vars(version))

    def filename(self, version: str) -> str:
        """The exact artifact filename (final path segment of the URL)."""
        url = self.render_url(version).split("?", 1)[0].rstrip("/")
        return url.rsplit("/", 1)[-1]


# ── Checksum provenance ──────────────────────────────────────────


class TrustTier(IntEnum):
    """Checksum provenance, strongest first.  Lower value wins."""

    GPG = 1
    PINNED = 2
    PUBLISHED = 3
    COMPUTED = 4

    @property
    def label(self) -> str:
        return {1: "GPG", 2: "Pinned", 3: "Published", 4: "Computed"}[self.value]

    @property
    def degraded(self) -> bool:
        """Computed digests prove integrity only, never authenticity."""
        return self is TrustTier.COMPUTED


class ChecksumRecord(BaseModel):
    """The expected digest for one (tool, version, platform)."""

    model_config = ConfigDict(frozen=True)

    tool: str
    version: str
    platform: Platform
    digest: Digest
    tier: TrustTier
    source: str  # e.g. "GPG-signed manifest https://…", "pinned table checksums.yml"

    @property
    def degraded(self) -> bool:
        return self.tier.degraded

    def to_dict(self) -> dict[str, object]:
        return {
            "tool": self.tool,
            "version": self.version,
            "platform": self.platform.key,
            "algorithm": self.digest.algorithm,
            "digest": self.digest.hex,
            "tier": self.tier.label,
            "source": self.source,
            "degraded": self.degraded,
        }


# ── Version ──────────────────────────────────────────────────────


class ResolutionTier(StrEnum):
    """How a concrete version was obtained from a spec."""

    EXACT = "exact"
    RESOLVED_LATEST_PATCH = "resolved-latest-patch"


class ResolvedVersion(BaseModel):
    """A version spec pinned to one concrete release.

    ``record`` is the checksum that made a partial spec's candidate
    acceptable; the engine reuses it instead of resolving again.
    """

    model_config = ConfigDict(frozen=True)

    spec: str
    concrete: str
    tier: ResolutionTier
    record: ChecksumRecord | None = Field(default=None, exclude=True)

    def __str__(self) -> str:
        return self.concrete


# ── Download attempt ─────────────────────────────────────────────


class FetchState(StrEnum):
    """Engine state machine."""

    RESOLVING_VERSION = "resolving_version"
    RESOLVING_CHECKSUM = "resolving_checksum"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    FAILED = "failed"


class AttemptOutcome(StrEnum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


@dataclass
class DownloadAttempt:
    """Mutable progress record for one ``fetch()`` call."""

    request: ArtifactRequest
    workspace_path: Path | None = None
    attempt_count: int = 0
    last_error: str = ""
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    state: FetchState = FetchState.RESOLVING_VERSION
    history: list[FetchState] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    resolved: ResolvedVersion | None = None
    record: ChecksumRecord | None = None

    def transition(self, state: FetchState) -> None:
        self.history.append(self.state)
        self.state = state
        if state == FetchState.VERIFIED:
            self.outcome = AttemptOutcome.VERIFIED
        elif state == FetchState.FAILED:
            self.outcome = AttemptOutcome.FAILED

    def record_failure(self, attempt: int, error: BaseException) -> None:
        self.attempt_count = attempt
        self.last_error = str(error)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


# ── Verified artifact ────────────────────────────────────────────


class VerifiedArtifact(BaseModel):
    """A downloaded file whose digest matched its checksum record.

    ``path`` lives inside the engine's workspace and is only valid
    while the ``fetch()`` context is open.
    """

    model_config = ConfigDict(frozen=True)

    path: Path
    request: ArtifactRequest
    resolved: ResolvedVersion
    record: ChecksumRecord
    actual: Digest
    size: int

    @property
    def degraded(self) -> bool:
        return self.record.degraded

    @property
    def version(self) -> str:
        return self.resolved.concrete

    def to_dict(self) -> dict[str, object]:
        data = self.record.to_dict()
        data.update(
            {
                "spec": self.resolved.spec,
                "resolution": self.resolved.tier.value,
                "filename": self.path.name,
                "size": self.size,
            }
        )
        return data
