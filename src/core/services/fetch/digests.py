"""
Digest computation and checksum manifest parsing.

Manifests come in two line formats::

    <hex>  <filename>          # GNU coreutils (``*`` marks binary mode)
    SHA256 (<filename>) = <hex>   # BSD / ``shasum --tag``

Matching is on the exact filename — never a prefix or substring —
so ``tool_linux_amd64.tar.gz`` cannot pick up the digest of
``tool_linux_amd64.tar.gz.sbom`` or a sibling architecture.
"""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import BinaryIO

from src.core.models.artifact import Digest

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024

_BSD_LINE_RE = re.compile(
    r"^(?P<algo>SHA256|SHA512)\s*\((?P<name>.+)\)\s*=\s*(?P<hex>[0-9a-fA-F]+)$"
)


def compute_digest(path: Path, algorithm: str = "sha256") -> Digest:
    """Hash a file in chunks."""
    with open(path, "rb") as f:
        return compute_stream_digest(f, algorithm)


def compute_stream_digest(stream: BinaryIO, algorithm: str = "sha256") -> Digest:
    h = hashlib.new(algorithm)
    for chunk in iter(lambda: stream.read(_CHUNK), b""):
        h.update(chunk)
    return Digest(algorithm=algorithm, hex=h.hexdigest())


def _normalize_name(name: str) -> str:
    name = name.strip()
    if name.startswith("*"):
        name = name[1:]
    if name.startswith("./"):
        name = name[2:]
    return name


def iter_manifest_entries(text: str):
    """Yield ``(filename, hex)`` pairs from a checksum manifest."""
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        bsd = _BSD_LINE_RE.match(line)
        if bsd:
            yield _normalize_name(bsd.group("name")), bsd.group("hex")
            continue

        parts = line.split(None, 1)
        if len(parts) != 2:
            continue
        yield _normalize_name(parts[1]), parts[0]


def find_manifest_digest(text: str, filename: str) -> Digest | None:
    """Return the digest listed for exactly ``filename``, or None.

    Raises:
        ValueError: If the manifest lists the file more than once with
            different digests.
    """
    found: Digest | None = None
    for name, hex_value in iter_manifest_entries(text):
        if name != filename:
            continue
        try:
            digest = Digest.parse(hex_value)
        except ValueError:
            logger.debug("Skipping malformed manifest entry for %s: %r", filename, hex_value)
            continue
        if found is not None and not found.matches(digest):
            raise ValueError(f"Manifest lists conflicting digests for {filename}")
        found = digest
    return found


def first_token_digest(text: str, algorithm: str | None = None) -> Digest | None:
    """Digest from a sidecar file (``<hex>  name`` or just ``<hex>``)."""
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        token = line.split()[0]
        try:
            digest = Digest.parse(token)
        except ValueError:
            return None
        if algorithm and digest.algorithm != algorithm:
            return None
        return digest
    return None
