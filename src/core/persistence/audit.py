"""
Audit ledger — append-only record of artifact verifications.

Every ``fetch()`` writes one entry to an NDJSON (newline-delimited JSON)
file when it terminates: which artifact, which digest, which trust tier
vouched for it, and whether it was verified or failed.  This is what
an image's provenance review reads afterwards.

The ledger is append-only: entries are never modified or deleted.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Default audit location (relative to the project root)
DEFAULT_AUDIT_DIR = ".state"
DEFAULT_AUDIT_FILE = "fetch-audit.ndjson"


class AuditEntry(BaseModel):
    """A single verification outcome."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    # What was fetched
    tool: str = ""
    version_spec: str = ""
    version: str = ""
    platform: str = ""
    url: str = ""

    # Why it is trusted
    tier: str = ""                 # GPG, Pinned, Published, Computed
    source: str = ""
    digest: str = ""               # algo:hex
    degraded: bool = False

    # Outcome
    outcome: str = ""              # verified, failed
    state: str = ""                # last engine state reached
    attempts: int = 0
    duration_ms: int = 0
    error_code: str = ""
    error: str = ""

    # Extensible context
    context: dict[str, Any] = Field(default_factory=dict)


class AuditWriter:
    """Append-only audit ledger writer.

    Each call to write() appends a single JSON line to the ledger file.
    The file is created if it doesn't exist.
    """

    def __init__(self, path: Path | None = None, project_root: Path | None = None):
        if path is not None:
            self._path = path
        elif project_root is not None:
            self._path = project_root / DEFAULT_AUDIT_DIR / DEFAULT_AUDIT_FILE
        else:
            self._path = Path(DEFAULT_AUDIT_DIR) / DEFAULT_AUDIT_FILE

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        """Append an entry.  Ledger I/O problems are logged, never raised."""
        data = entry.model_dump(mode="json")
        line = json.dumps(data, ensure_ascii=False) + "\n"

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Audit entry written: %s %s %s", entry.tool, entry.version, entry.outcome)
        except OSError as e:
            logger.error("Failed to write audit entry: %s", e)

    def read_all(self) -> list[AuditEntry]:
        """Read all entries from the ledger, oldest first."""
        if not self._path.is_file():
            return []

        entries = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(AuditEntry.model_validate(json.loads(line)))
                    except ValueError as e:
                        logger.warning("Skipping corrupt audit entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read audit ledger: %s", e)

        return entries

    def read_recent(self, n: int = 20) -> list[AuditEntry]:
        return self.read_all()[-n:]

    def entry_count(self) -> int:
        """Count entries without loading them all into memory."""
        if not self._path.is_file():
            return 0
        try:
            with self._path.open("r", encoding="utf-8") as f:
                return sum(1 for line in f if line.strip())
        except OSError:
            return 0
