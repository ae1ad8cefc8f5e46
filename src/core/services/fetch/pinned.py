"""
Pinned checksum table — known-good digests committed to the repo.

File format (``checksums.yml``)::

    schema_version: 1
    tools:
      node:
        "20.11.1":
          linux-amd64: sha256:bbb1…
          linux-arm64: sha256:ccc2…

Lookup is exact on (tool, version, platform key).  Values are
``algo:hex`` or bare hex.  Entries whose value is the literal
``placeholder`` are ignored, any other malformed value rejects the
whole file.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

import yaml

from src.core.config.loader import ConfigError
from src.core.models.artifact import Digest, Platform

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
_PLACEHOLDERS = {"placeholder", "placeholder_actual_checksum_needed", "TODO", ""}


class PinConflict(ValueError):
    """A different digest is already pinned for the same key."""


class PinnedTable:
    """In-memory view of the pinned checksum file."""

    def __init__(
        self,
        entries: dict[str, dict[str, dict[str, Digest]]] | None = None,
        path: Path | None = None,
    ):
        self._entries: dict[str, dict[str, dict[str, Digest]]] = entries or {}
        self.path = path

    # ── Loading ─────────────────────────────────────────────────

    @classmethod
    def load(cls, path: Path) -> PinnedTable:
        """Read a pinned table.  A missing file is an empty table.

        Raises:
            ConfigError: If the file exists but is not a valid table.
        """
        if not path.is_file():
            logger.debug("No pinned table at %s", path)
            return cls(path=path)

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read pinned table {path}: {e}") from e

        table = cls.from_dict(data or {}, source=str(path))
        table.path = path
        logger.debug("Loaded %d pinned digests from %s", len(table), path)
        return table

    @classmethod
    def from_dict(cls, data: object, *, source: str = "<memory>") -> PinnedTable:
        if not isinstance(data, dict):
            raise ConfigError(f"Pinned table {source} must be a mapping")

        schema = data.get("schema_version", SCHEMA_VERSION)
        if schema != SCHEMA_VERSION:
            raise ConfigError(
                f"Pinned table {source} has schema_version {schema!r}, "
                f"expected {SCHEMA_VERSION}"
            )

        tools = data.get("tools") or {}
        if not isinstance(tools, dict):
            raise ConfigError(f"Pinned table {source}: 'tools' must be a mapping")

        entries: dict[str, dict[str, dict[str, Digest]]] = {}
        for tool, versions in tools.items():
            if not isinstance(versions, dict):
                raise ConfigError(f"Pinned table {source}: tools.{tool} must be a mapping")
            for version, platforms in versions.items():
                if not isinstance(platforms, dict):
                    raise ConfigError(
                        f"Pinned table {source}: tools.{tool}.{version} must map platforms to digests"
                    )
                for platform_key, value in platforms.items():
                    text = str(value).strip() if value is not None else ""
                    if text in _PLACEHOLDERS:
                        continue
                    try:
                        digest = Digest.parse(text)
                    except ValueError as e:
                        raise ConfigError(
                            f"Pinned table {source}: tools.{tool}.{version}.{platform_key}: {e}"
                        ) from e
                    entries.setdefault(str(tool), {}).setdefault(str(version), {})[
                        str(platform_key)
                    ] = digest
        return cls(entries)

    # ── Queries ─────────────────────────────────────────────────

    def lookup(self, tool: str, version: str, platform: Platform) -> Digest | None:
        return self._entries.get(tool, {}).get(version, {}).get(platform.key)

    def tools(self) -> list[str]:
        return sorted(self._entries)

    def rows(self, tool: str | None = None) -> list[tuple[str, str, str, Digest]]:
        """Flatten to ``(tool, version, platform_key, digest)`` rows."""
        out = []
        for name in self.tools():
            if tool and name != tool:
                continue
            for version in sorted(self._entries[name]):
                for key, digest in sorted(self._entries[name][version].items()):
                    out.append((name, version, key, digest))
        return out

    def __len__(self) -> int:
        return sum(len(p) for v in self._entries.values() for p in v.values())

    # ── Mutation ────────────────────────────────────────────────

    def add(
        self,
        tool: str,
        version: str,
        platform: Platform,
        digest: Digest,
        *,
        replace: bool = False,
    ) -> bool:
        """Pin a digest.  Returns False if the identical pin already exists.

        Raises:
            PinConflict: A different digest is pinned and ``replace`` is False.
        """
        slot = self._entries.setdefault(tool, {}).setdefault(version, {})
        existing = slot.get(platform.key)
        if existing is not None:
            if existing.matches(digest):
                return False
            if not replace:
                raise PinConflict(
                    f"{tool} {version} {platform.key} is already pinned to {existing}"
                )
            logger.warning(
                "Replacing pin %s %s %s: %s → %s", tool, version, platform.key, existing, digest
            )
        slot[platform.key] = digest
        return True

    def to_dict(self) -> dict:
        return {
            "schema_version": SCHEMA_VERSION,
            "tools": {
                tool: {
                    version: {key: str(d) for key, d in sorted(platforms.items())}
                    for version, platforms in sorted(versions.items())
                }
                for tool, versions in sorted(self._entries.items())
            },
        }

    def save(self, path: Path | None = None) -> Path:
        """Write the table atomically (temp file + rename)."""
        target = path or self.path
        if target is None:
            raise ConfigError("Pinned table has no path to save to")

        target.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)

        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=".checksums_", suffix=".tmp")
        os.close(fd)
        tmp = Path(tmp_path)
        try:
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(target)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
        self.path = target
        logger.info("Pinned table saved to %s (%d digests)", target, len(self))
        return target
