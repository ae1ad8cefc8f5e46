"""
Handoff — installing or unpacking a verified artifact.

These functions accept only a ``VerifiedArtifact`` and only while the
engine's ``fetch()`` context is open, so nothing can be extracted or
installed before its digest has matched::

    with engine.fetch(request) as artifact:
        handoff.extract(artifact, Path("/usr/local/lib/node"), strip_components=1)

Archive extraction refuses absolute paths, ``..`` traversal and links
that point outside the destination.
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import tempfile
import zipfile
from pathlib import Path, PurePosixPath

from src.core.models.artifact import VerifiedArtifact
from src.core.services.fetch.errors import FetchError

logger = logging.getLogger(__name__)

_TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2")


class HandoffError(FetchError):
    """A verified artifact could not be installed or extracted."""

    code = "E_HANDOFF"
    exit_code = 1


def archive_kind(name: str) -> str | None:
    """``"tar"``, ``"zip"`` or None for a plain file."""
    lower = name.lower()
    if lower.endswith(_TAR_SUFFIXES):
        return "tar"
    if lower.endswith(".zip"):
        return "zip"
    return None


def _require_live(artifact: VerifiedArtifact) -> Path:
    if not isinstance(artifact, VerifiedArtifact):
        raise HandoffError(f"Refusing to hand off unverified object {type(artifact).__name__}")
    if not artifact.path.is_file():
        raise HandoffError(
            f"Verified artifact {artifact.path.name} is no longer available",
            hint="Install or extract inside the 'with engine.fetch(...)' block.",
        )
    return artifact.path


# ── Install ─────────────────────────────────────────────────────────


def install_to(artifact: VerifiedArtifact, dest: Path, *, mode: int = 0o755) -> Path:
    """Copy the artifact to ``dest`` (a file path, or a directory to copy into)."""
    source = _require_live(artifact)
    target = dest / source.name if dest.is_dir() else dest
    _atomic_copy(source, target, mode)
    logger.info("Installed %s → %s", source.name, target)
    return target


def _atomic_copy(source: Path, target: Path, mode: int) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    os.close(fd)
    tmp = Path(tmp_path)
    try:
        shutil.copyfile(source, tmp)
        os.chmod(tmp, mode)
        tmp.replace(target)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise HandoffError(f"Cannot install to {target}: {exc}") from exc


# ── Extract ─────────────────────────────────────────────────────────


def _strip(name: str, components: int) -> str | None:
    parts = [p for p in PurePosixPath(name).parts if p not in ("", ".")]
    if len(parts) <= components:
        return None
    return "/".join(parts[components:])


def _safe_target(dest: Path, relative: str) -> Path:
    path = PurePosixPath(relative)
    if path.is_absolute() or ".." in path.parts:
        raise HandoffError(f"Archive member escapes destination: {relative!r}")
    target = (dest / relative).resolve()
    if not target.is_relative_to(dest.resolve()):
        raise HandoffError(f"Archive member escapes destination: {relative!r}")
    return target


def extract(
    artifact: VerifiedArtifact,
    dest: Path,
    *,
    strip_components: int = 0,
) -> list[Path]:
    """Unpack a tar or zip artifact into ``dest``; return the files written."""
    source = _require_live(artifact)
    kind = archive_kind(source.name)
    if kind is None:
        raise HandoffError(f"{source.name} is not an archive", hint="Use install_to() for plain files.")

    dest.mkdir(parents=True, exist_ok=True)
    try:
        if kind == "tar":
            written = _extract_tar(source, dest, strip_components)
        else:
            written = _extract_zip(source, dest, strip_components)
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as exc:
        raise HandoffError(f"Cannot extract {source.name}: {exc}") from exc

    logger.info("Extracted %d files from %s → %s", len(written), source.name, dest)
    return written


def _extract_tar(source: Path, dest: Path, strip_components: int) -> list[Path]:
    written: list[Path] = []
    with tarfile.open(source, "r:*") as tf:
        members = []
        for member in tf.getmembers():
            name = _strip(member.name, strip_components)
            if name is None:
                continue
            _safe_target(dest, name)
            if member.islnk():
                # hardlink targets are archive paths too
                link = _strip(member.linkname, strip_components)
                if link is None:
                    logger.debug("Skipping %s: link target %s is stripped", member.name, member.linkname)
                    continue
                _safe_target(dest, link)
                member.linkname = link
            member.name = name
            members.append(member)
        try:
            tf.extractall(dest, members=members, filter="data")
        except tarfile.FilterError as exc:
            raise HandoffError(f"Unsafe archive member in {source.name}: {exc}") from exc
        written = [dest / m.name for m in members if m.isfile()]
    return written


def _extract_zip(source: Path, dest: Path, strip_components: int) -> list[Path]:
    written: list[Path] = []
    with zipfile.ZipFile(source) as zf:
        for info in zf.infolist():
            name = _strip(info.filename, strip_components)
            if name is None:
                continue
            target = _safe_target(dest, name)
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as src, open(target, "wb") as out:
                shutil.copyfileobj(src, out)
            unix_mode = (info.external_attr >> 16) & 0o777
            if unix_mode:
                os.chmod(target, unix_mode)
            written.append(target)
    return written


def extract_member(artifact: VerifiedArtifact, member: str, dest: Path, *, mode: int = 0o755) -> Path:
    """Install one file from an archive (matched by path or basename) to ``dest``."""
    source = _require_live(artifact)
    kind = archive_kind(source.name)
    if kind is None:
        raise HandoffError(f"{source.name} is not an archive")

    staging = Path(tempfile.mkdtemp(prefix="devfetch-member-", dir=source.parent))
    try:
        files = extract(artifact, staging)
        found = next(
            (p for p in files if p.relative_to(staging).as_posix() == member),
            None,
        ) or next((p for p in files if p.name == member), None)
        if found is None:
            available = [p.relative_to(staging).as_posix() for p in files][:10]
            raise HandoffError(
                f"{member!r} not found in {source.name}",
                context={"available": ", ".join(available)},
            )
        target = dest / found.name if dest.is_dir() else dest
        _atomic_copy(found, target, mode)
        logger.info("Installed %s from %s → %s", member, source.name, target)
        return target
    finally:
        shutil.rmtree(staging, ignore_errors=True)
