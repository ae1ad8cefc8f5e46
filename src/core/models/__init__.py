"""
Domain models — Pydantic types for artifact acquisition.

All models are re-exported here for convenient access:

    from src.core.models import ArtifactRequest, ChecksumRecord, FetchConfig, ToolSpec
"""

from src.core.models.artifact import (
    ArtifactRequest,
    AttemptOutcome,
    ChecksumRecord,
    Digest,
    DownloadAttempt,
    FetchState,
    Platform,
    ResolutionTier,
    ResolvedVersion,
    TrustTier,
    VerifiedArtifact,
)
from src.core.models.config import (
    FetchConfig,
    FetchSettings,
    GpgSpec,
    RetrySettings,
    StrategySpec,
    ToolSpec,
)

__all__ = [
    "ArtifactRequest",
    "AttemptOutcome",
    "ChecksumRecord",
    "Digest",
    "DownloadAttempt",
    "FetchConfig",
    "FetchSettings",
    "FetchState",
    "GpgSpec",
    "Platform",
    "ResolutionTier",
    "ResolvedVersion",
    "RetrySettings",
    "StrategySpec",
    "ToolSpec",
    "TrustTier",
    "VerifiedArtifact",
]
