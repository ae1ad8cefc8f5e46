"""
Platform detection and normalization.

Vendors spell architectures differently (``x86_64``, ``x64``,
``amd64``); internally everything uses the Debian names that
``dpkg --print-architecture`` reports.
"""

from __future__ import annotations

import logging
import platform as _platform

from src.core.models.artifact import Platform
from src.core.models.config import ToolSpec
from src.core.services.fetch.errors import UnsupportedPlatform

logger = logging.getLogger(__name__)

_ARCH_MAP: dict[str, str] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "AMD64": "amd64",      # Windows / WSL2
    "x64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",      # macOS (Darwin reports arm64)
    "armv7l": "armhf",
    "armhf": "armhf",
    "arm/v7": "armhf",     # Docker TARGETPLATFORM linux/arm/v7
    "arm64/v8": "arm64",
    "386": "i386",
    "i686": "i386",
    "i386": "i386",
}

_OS_MAP: dict[str, str] = {
    "linux": "linux",
    "darwin": "darwin",
    "macos": "darwin",
}


def normalize_arch(arch: str) -> str:
    """Map a machine/vendor architecture name to its normalized form."""
    normalized = _ARCH_MAP.get(arch) or _ARCH_MAP.get(arch.lower())
    if normalized is None:
        raise UnsupportedPlatform(
            f"Unsupported architecture: {arch!r}",
            hint=f"Supported: {', '.join(sorted(set(_ARCH_MAP.values())))}",
            context={"field": "arch"},
        )
    return normalized


def normalize_os(os_name: str) -> str:
    normalized = _OS_MAP.get(os_name.lower())
    if normalized is None:
        raise UnsupportedPlatform(
            f"Unsupported operating system: {os_name!r}",
            hint=f"Supported: {', '.join(sorted(set(_OS_MAP.values())))}",
            context={"field": "os"},
        )
    return normalized


def parse_platform(value: str) -> Platform:
    """Parse ``linux/amd64``, ``linux-arm64`` or a bare ``x86_64``."""
    text = (value or "").strip()
    if not text:
        raise UnsupportedPlatform("Empty platform", context={"field": "platform"})
    for sep in ("/", "-"):
        if sep in text:
            os_name, arch = text.split(sep, 1)
            return Platform(os=normalize_os(os_name), arch=normalize_arch(arch))
    return Platform(os="linux", arch=normalize_arch(text))


def detect_platform() -> Platform:
    """Platform of the running build."""
    detected = Platform(
        os=normalize_os(_platform.system()),
        arch=normalize_arch(_platform.machine()),
    )
    logger.debug("Detected platform %s", detected.key)
    return detected


def ensure_supported(target: Platform, supported: list[str], *, tool: str) -> None:
    """Reject platforms a tool does not publish artifacts for."""
    if supported and target.key not in supported:
        raise UnsupportedPlatform(
            f"{tool} is not available for {target.key}",
            hint=f"Available platforms: {', '.join(supported)}",
            context={"tool": tool, "field": "platform"},
        )


def template_vars(tool: ToolSpec, version: str, target: Platform) -> dict[str, str]:
    """``{version}``, ``{series}`` (X.Y), ``{os}``, ``{arch}`` in the tool vendor's spelling."""
    return {
        "version": version,
        "series": ".".join(version.split(".")[:2]),
        "os": tool.os_aliases.get(target.os, target.os),
        "arch": tool.arch_aliases.get(target.arch, target.arch),
    }
