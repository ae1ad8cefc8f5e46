"""
Secure workspace — one private temporary directory per download.

Directories are created with ``tempfile.mkdtemp`` (unpredictable name,
mode 0700) and verified to be a real directory owned by the current
user before anything is written into them.

    with SecureWorkspace.create(prefix="node-") as ws:
        target = ws.file("node-v20.11.1-linux-x64.tar.xz")
        ...
    # directory and everything in it are gone here
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path

from src.core.services.fetch.errors import FetchError

logger = logging.getLogger(__name__)

_PREFIX = "devfetch-"


class WorkspaceError(FetchError):
    """Workspace could not be created, trusted, or is already destroyed."""

    code = "E_WORKSPACE"
    exit_code = 1


class SecureWorkspace:
    """Handle owning the lifetime of one temporary directory.

    ``destroy()`` is idempotent; touching ``path`` afterwards raises
    ``WorkspaceError``.
    """

    def __init__(self, path: Path):
        self._path: Path | None = path
        self._check()

    # ── Lifecycle ───────────────────────────────────────────────

    @classmethod
    def create(cls, prefix: str = _PREFIX, base_dir: Path | str | None = None) -> SecureWorkspace:
        try:
            if base_dir is not None:
                Path(base_dir).mkdir(parents=True, exist_ok=True)
            raw = tempfile.mkdtemp(prefix=prefix, dir=str(base_dir) if base_dir else None)
        except OSError as exc:
            raise WorkspaceError(f"Cannot create workspace: {exc}") from exc
        os.chmod(raw, 0o700)
        try:
            workspace = cls(Path(raw))
        except WorkspaceError:
            shutil.rmtree(raw, ignore_errors=True)
            raise
        logger.debug("Workspace created: %s", raw)
        return workspace

    def destroy(self) -> None:
        if self._path is None:
            return
        path, self._path = self._path, None
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning("Workspace %s could not be fully removed", path)
        else:
            logger.debug("Workspace destroyed: %s", path)

    def __enter__(self) -> SecureWorkspace:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()

    # ── Access ──────────────────────────────────────────────────

    @property
    def alive(self) -> bool:
        return self._path is not None

    @property
    def path(self) -> Path:
        if self._path is None:
            raise WorkspaceError("Workspace has been destroyed")
        return self._path

    def file(self, name: str) -> Path:
        """Path for a plain filename inside the workspace."""
        if not name or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
            raise WorkspaceError(f"Invalid workspace filename: {name!r}")
        return self.path / name

    def subdir(self, name: str) -> Path:
        """Create a private subdirectory (e.g. a GNUPGHOME)."""
        target = self.file(name)
        target.mkdir(mode=0o700, exist_ok=False)
        return target

    # ── Internals ───────────────────────────────────────────────

    def _check(self) -> None:
        path = self.path
        try:
            st = os.lstat(path)
        except OSError as exc:
            raise WorkspaceError(f"Workspace {path} is not accessible: {exc}") from exc
        if stat.S_ISLNK(st.st_mode) or not stat.S_ISDIR(st.st_mode):
            raise WorkspaceError(f"Workspace {path} is not a real directory")
        if hasattr(os, "getuid") and st.st_uid != os.getuid():
            raise WorkspaceError(f"Workspace {path} is not owned by the current user")
        if st.st_mode & 0o077:
            raise WorkspaceError(f"Workspace {path} is accessible to other users")

    def __repr__(self) -> str:
        return f"SecureWorkspace({self._path!s})"
