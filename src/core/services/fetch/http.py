"""
HTTP transport — urllib calls with transient/permanent classification.

Every network call of the subsystem goes through here so that the
retry executor sees exactly two kinds of failure:

    TransientError  — timeout, connection reset/refused, DNS, 5xx, 408, 429
    PermanentError  — 404 and other 4xx, bad URL, malformed body

A download that outruns its per-artifact deadline mid-stream raises
``NetworkExhausted(reason="deadline")`` directly.

``file://`` URLs are supported (urllib handles them) and are what the
test-suite uses for fixtures.
"""

from __future__ import annotations

import http.client
import json
import logging
import os
import threading
import urllib.error
import urllib.request
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn
from urllib.parse import urlparse

from src import __version__
from src.core.services.fetch.errors import FetchCancelled, NetworkExhausted, PermanentError, TransientError

if TYPE_CHECKING:
    from src.core.reliability.retry import Deadline

logger = logging.getLogger(__name__)

USER_AGENT = f"devfetch/{__version__}"

_CHUNK = 64 * 1024
_MAX_TEXT_BYTES = 16 * 1024 * 1024
_TRANSIENT_STATUS = {408, 429}
_GITHUB_HOSTS = {"api.github.com", "github.com", "objects.githubusercontent.com"}


def _headers(url: str) -> dict[str, str]:
    headers = {"User-Agent": USER_AGENT}
    host = urlparse(url).hostname or ""
    token = os.environ.get("GITHUB_TOKEN", "")
    if token and host in _GITHUB_HOSTS:
        headers["Authorization"] = f"token {token}"
    if host == "api.github.com":
        headers["Accept"] = "application/vnd.github+json"
    return headers


def _retry_after(exc: urllib.error.HTTPError) -> float | None:
    value = exc.headers.get("Retry-After") if exc.headers else None
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify(exc: BaseException, url: str) -> Exception:
    """Translate a urllib/socket failure into Transient/PermanentError."""
    if isinstance(exc, (TransientError, PermanentError)):
        return exc

    if isinstance(exc, urllib.error.HTTPError):
        message = f"HTTP {exc.code} for {url}"
        if exc.code >= 500 or exc.code in _TRANSIENT_STATUS:
            return TransientError(message, retry_after=_retry_after(exc))
        if exc.code == 403 and "rate limit" in (exc.reason or "").lower():
            return TransientError(f"{message} (rate limited)", retry_after=_retry_after(exc))
        return PermanentError(message, status=exc.code)

    if isinstance(exc, urllib.error.URLError):
        reason = exc.reason
        if isinstance(reason, FileNotFoundError):
            return PermanentError(f"Not found: {url}", status=404)
        if isinstance(reason, OSError):
            return TransientError(f"Network error for {url}: {reason}")
        return PermanentError(f"Cannot open {url}: {reason}")

    if isinstance(exc, (TimeoutError, ConnectionError, http.client.IncompleteRead)):
        return TransientError(f"Network error for {url}: {exc}")

    if isinstance(exc, http.client.HTTPException):
        return PermanentError(f"Malformed response from {url}: {exc}")

    if isinstance(exc, ValueError):
        return PermanentError(f"Invalid URL {url!r}: {exc}")

    if isinstance(exc, OSError):
        return TransientError(f"I/O error for {url}: {exc}")

    return exc  # type: ignore[return-value]


def _reraise(exc: BaseException, url: str) -> NoReturn:
    classified = classify(exc, url)
    if classified is exc:
        raise exc
    raise classified from exc


def _open(url: str, timeout: float):
    request = urllib.request.Request(url, headers=_headers(url))
    return urllib.request.urlopen(request, timeout=timeout)  # noqa: S310 - callers verify content


def fetch_bytes(url: str, *, timeout: float = 30.0, max_bytes: int = _MAX_TEXT_BYTES) -> bytes:
    """GET a small document (manifest, index, signature)."""
    logger.debug("GET %s", url)
    try:
        with _open(url, timeout) as resp:
            payload = resp.read(max_bytes + 1)
    except Exception as exc:
        _reraise(exc, url)
    if len(payload) > max_bytes:
        raise PermanentError(f"Response from {url} exceeds {max_bytes} bytes")
    return payload


def fetch_text(url: str, *, timeout: float = 30.0) -> str:
    return fetch_bytes(url, timeout=timeout).decode("utf-8", errors="replace")


def fetch_json(url: str, *, timeout: float = 30.0) -> Any:
    raw = fetch_bytes(url, timeout=timeout)
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PermanentError(f"Malformed JSON from {url}: {exc}") from exc


def _socket_timeout(timeout: float, deadline: Deadline | None) -> float:
    remaining = deadline.remaining() if deadline is not None else None
    if remaining is None:
        return timeout
    return max(0.1, min(timeout, remaining))


def download_to(
    url: str,
    dest: Path,
    *,
    timeout: float = 30.0,
    cancel: threading.Event | None = None,
    deadline: Deadline | None = None,
) -> int:
    """Stream ``url`` into ``dest``; return the byte count.

    The deadline is checked between chunks, so a server that trickles
    bytes cannot outlive it.  A failed, cancelled or expired download
    leaves no file behind.
    """
    logger.debug("Downloading %s → %s", url, dest)
    written = 0
    try:
        with _open(url, _socket_timeout(timeout, deadline)) as resp, open(dest, "wb") as f:
            expected = int(resp.headers.get("Content-Length", 0) or 0) if resp.headers else 0
            while True:
                if cancel is not None and cancel.is_set():
                    raise FetchCancelled(f"Download of {url} cancelled")
                if deadline is not None and deadline.expired:
                    raise NetworkExhausted(
                        f"Download of {url} exceeded its {deadline.seconds}s deadline after {written} bytes",
                        attempts=1,
                        reason="deadline",
                        hint="Raise settings.deadline or check the mirror's availability.",
                    )
                chunk = resp.read(_CHUNK)
                if not chunk:
                    break
                f.write(chunk)
                written += len(chunk)
        if expected and written != expected:
            raise TransientError(
                f"Truncated download from {url}: got {written} of {expected} bytes"
            )
    except (FetchCancelled, NetworkExhausted):
        dest.unlink(missing_ok=True)
        raise
    except Exception as exc:
        dest.unlink(missing_ok=True)
        _reraise(exc, url)
    return written
