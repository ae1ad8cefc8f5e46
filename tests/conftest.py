"""
Shared test fixtures and configuration.

Artifacts are served from ``file://`` URLs under ``tmp_path`` so no
test touches the network.
"""

import hashlib
from pathlib import Path

import pytest

from src.core.models.artifact import ArtifactRequest, Platform
from src.core.reliability.retry import RetryPolicy

LINUX_AMD64 = Platform(os="linux", arch="amd64")
LINUX_ARM64 = Platform(os="linux", arch="arm64")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def dist_dir(tmp_path: Path) -> Path:
    """A directory standing in for a vendor's download server."""
    dist = tmp_path / "dist"
    dist.mkdir()
    return dist


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Three attempts, no waiting."""
    return RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, jitter=0)


@pytest.fixture
def make_request(dist_dir: Path):
    """Factory for requests whose artifacts live in ``dist_dir``."""

    def _make(
        version_spec: str = "1.2.3",
        *,
        tool: str = "demo",
        platform: Platform = LINUX_AMD64,
        template: str = "demo-{version}-{os}-{arch}.tar.gz",
    ) -> ArtifactRequest:
        return ArtifactRequest(
            tool=tool,
            version_spec=version_spec,
            platform=platform,
            url_template=f"file://{dist_dir}/{template}",
        )

    return _make


@pytest.fixture
def publish(dist_dir: Path):
    """Write an artifact into ``dist_dir``; return its sha256 hex."""

    def _publish(name: str, data: bytes) -> str:
        (dist_dir / name).write_bytes(data)
        return sha256_hex(data)

    return _publish
