"""
Build context — what the current feature installation is fetching.

Feature installers used to communicate through ambient environment
variables (``NODE_VERSION``, ``TARGETARCH``, install prefixes).  Here
that state is one explicit value, built once at the entry point and
passed down:

    ctx = BuildContext.from_env(config.tools["node"])
    request = ctx.to_request(config.tools["node"])
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from src.core.models.artifact import ArtifactRequest, Platform
from src.core.models.config import ToolSpec
from src.core.services.fetch.errors import InvalidVersion
from src.core.services.fetch.platform import detect_platform, ensure_supported, parse_platform


class BuildContext(BaseModel):
    """Tool, version spec, target platform and install destination."""

    model_config = ConfigDict(frozen=True)

    tool: str
    version_spec: str
    platform: Platform
    destination: Path | None = None

    @classmethod
    def from_env(
        cls,
        tool: ToolSpec,
        *,
        env: Mapping[str, str] | None = None,
        version_spec: str | None = None,
        platform: str | Platform | None = None,
        destination: Path | None = None,
    ) -> BuildContext:
        """Build from explicit values, falling back to the environment.

        Version: ``version_spec`` → ``$<TOOL>_VERSION`` → the tool's default.
        Platform: ``platform`` → ``$TARGETPLATFORM`` → the running machine.

        Raises:
            InvalidVersion: No version given anywhere.
            UnsupportedPlatform: Unknown platform, or one the tool lacks.
        """
        env = os.environ if env is None else env

        spec = version_spec or env.get(tool.version_variable) or tool.default_version
        if not spec:
            raise InvalidVersion(
                f"{tool.version_variable} is not set",
                hint=f"Export {tool.version_variable} or pass a version.",
                context={"field": tool.version_variable},
            )

        if isinstance(platform, Platform):
            target = platform
        elif platform:
            target = parse_platform(platform)
        elif env.get("TARGETPLATFORM"):
            target = parse_platform(env["TARGETPLATFORM"])
        else:
            target = detect_platform()
        ensure_supported(target, tool.platforms, tool=tool.name)

        return cls(tool=tool.name, version_spec=spec, platform=target, destination=destination)

    def to_request(self, tool: ToolSpec) -> ArtifactRequest:
        return ArtifactRequest(
            tool=self.tool,
            version_spec=self.version_spec,
            platform=self.platform,
            url_template=tool.url,
            arch_aliases=tool.arch_aliases,
            os_aliases=tool.os_aliases,
        )
