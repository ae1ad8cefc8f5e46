"""
Fetch errors — the typed failure taxonomy of artifact acquisition.

Every failure that reaches a feature installer is one of these.  Each
carries a stable ``code`` for machine consumers, an optional ``hint``
for the operator, a ``context`` mapping for diagnostics, and the
process ``exit_code`` the CLI uses when it aborts.

    FetchError
    ├── InvalidInput
    │   ├── InvalidVersion
    │   └── UnsupportedPlatform
    ├── NetworkExhausted
    ├── DownloadFailed
    ├── ChecksumMismatch
    ├── SignatureInvalid
    ├── Unresolved
    └── FetchCancelled

``TransientError`` and ``PermanentError`` are transport-level signals
raised by the HTTP layer and consumed by the retry executor; they never
escape the executor unwrapped except as the ``last_error`` of
``NetworkExhausted`` or as a direct permanent failure.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class FetchError(Exception):
    """Base class for all artifact acquisition failures."""

    code = "E_FETCH"
    exit_code = 1

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [self.message]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        for key, value in self.context.items():
            if value not in (None, ""):
                parts.append(f"  {key}: {value}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "error": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }
        if self.hint:
            payload["hint"] = self.hint
        return payload


# ── Invalid input ────────────────────────────────────────────────


class InvalidInput(FetchError):
    """Malformed caller input.  Never retried."""

    code = "E_INVALID_INPUT"
    exit_code = 2


class InvalidVersion(InvalidInput):
    """Version spec is malformed or no candidate in its prefix is usable."""

    code = "E_INVALID_VERSION"


class UnsupportedPlatform(InvalidInput):
    """Target OS/architecture is unknown or not offered by the tool."""

    code = "E_UNSUPPORTED_PLATFORM"


# ── Network ──────────────────────────────────────────────────────


class TransientError(Exception):
    """A network failure worth retrying (timeout, reset, 5xx, 429)."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PermanentError(Exception):
    """A network failure that retrying cannot fix (404, malformed body)."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NetworkExhausted(FetchError):
    """Retry budget or the per-artifact deadline ran out."""

    code = "E_NETWORK_EXHAUSTED"
    exit_code = 3

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        last_error: BaseException | None = None,
        reason: str = "attempts",
        hint: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        ctx = dict(context or {})
        ctx.setdefault("attempts", attempts)
        if last_error is not None:
            ctx.setdefault("last_error", str(last_error))
        super().__init__(message, hint=hint, context=ctx)
        self.attempts = attempts
        self.last_error = last_error
        self.reason = reason


class DownloadFailed(FetchError):
    """The artifact URL failed permanently (404, rejected request)."""

    code = "E_DOWNLOAD_FAILED"
    exit_code = 3


# ── Verification ─────────────────────────────────────────────────


class ChecksumMismatch(FetchError):
    """Downloaded bytes do not match the resolved digest."""

    code = "E_CHECKSUM_MISMATCH"
    exit_code = 4

    def __init__(
        self,
        message: str,
        *,
        expected: str,
        actual: str,
        hint: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        ctx = dict(context or {})
        ctx["expected"] = expected
        ctx["actual"] = actual
        super().__init__(message, hint=hint, context=ctx)
        self.expected = expected
        self.actual = actual


class SignatureInvalid(FetchError):
    """A vendor signature was present but gpg rejected it."""

    code = "E_SIGNATURE_INVALID"
    exit_code = 4


class Unresolved(FetchError):
    """No trust tier produced a digest for (tool, version, platform)."""

    code = "E_UNRESOLVED"
    exit_code = 5


class FetchCancelled(FetchError):
    """An external abort interrupted the acquisition."""

    code = "E_CANCELLED"
    exit_code = 130


__all__ = [
    "ChecksumMismatch",
    "DownloadFailed",
    "FetchCancelled",
    "FetchError",
    "InvalidInput",
    "InvalidVersion",
    "NetworkExhausted",
    "PermanentError",
    "SignatureInvalid",
    "TransientError",
    "Unresolved",
    "UnsupportedPlatform",
]
