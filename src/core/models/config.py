"""
Configuration models — devfetch.yml and the built-in tool catalogue.

A tool spec says where a tool's artifacts live and which strategies
supply its versions and checksums::

    tools:
      node:
        url: https://nodejs.org/dist/v{version}/node-v{version}-{os}-{arch}.tar.xz
        arch_aliases: {amd64: x64}
        version_env: NODE_VERSION
        versions: {strategy: nodejs_index}
        published:
          strategy: checksums_file
          url: https://nodejs.org/dist/v{version}/SHASUMS256.txt
        gpg:
          manifest: https://nodejs.org/dist/v{version}/SHASUMS256.txt
          signatures: ["{manifest}.sig", "{manifest}.asc"]
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RetrySettings(BaseModel):
    """Backoff knobs for network calls."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=2.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, le=1)


class StrategySpec(BaseModel):
    """A named strategy plus its free-form options.

    Any key besides ``strategy`` is passed to the strategy's constructor.
    """

    model_config = ConfigDict(extra="allow")

    strategy: str

    @property
    def options(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class GpgSpec(BaseModel):
    """A detached vendor signature.

    ``mode: manifest`` signs a checksum manifest listing the artifact
    (Node.js, HashiCorp).  ``mode: artifact`` signs the artifact itself
    (Python ``.tar.xz.asc``, Go ``.tar.gz.asc``); it can only be checked
    after the download, inside the engine's workspace.
    """

    mode: Literal["manifest", "artifact"] = "manifest"
    manifest: str | None = None
    signatures: list[str] | None = None
    keyring: str | None = None  # subdirectory of keyring_dir (default: tool name)

    @model_validator(mode="after")
    def _manifest_required(self) -> GpgSpec:
        if self.mode == "manifest" and not self.manifest:
            raise ValueError("gpg.manifest is required unless mode is 'artifact'")
        return self

    @property
    def signature_templates(self) -> list[str]:
        """Candidate signature URLs, tried in order."""
        if self.signatures:
            return list(self.signatures)
        if self.mode == "artifact":
            return ["{url}.asc"]
        return ["{manifest}.sig", "{manifest}.asc"]


class ToolSpec(BaseModel):
    """Where a tool's artifacts live and how to trust them."""

    name: str = ""
    url: str
    arch_aliases: dict[str, str] = Field(default_factory=dict)
    os_aliases: dict[str, str] = Field(default_factory=dict)
    platforms: list[str] = Field(default_factory=list)   # empty = any
    version_env: str | None = None
    version_format: Literal["any", "flexible", "semver"] = "any"
    default_version: str | None = None
    allow_computed: bool = True

    versions: StrategySpec | None = None
    published: StrategySpec | None = None
    gpg: GpgSpec | None = None

    @property
    def version_variable(self) -> str:
        """Env var carrying the version, e.g. ``RUBY_VERSION``."""
        if self.version_env:
            return self.version_env
        return f"{self.name.upper().replace('-', '_')}_VERSION"


class FetchSettings(BaseModel):
    """Process-wide acquisition settings."""

    retry: RetrySettings = Field(default_factory=RetrySettings)
    timeout: float = Field(default=30.0, gt=0)           # per network call
    deadline: float | None = Field(default=900.0, gt=0)  # per artifact
    require_verified: bool = False
    pinned_table: str = "checksums.yml"
    keyring_dir: str = "gpg-keys"
    audit_log: str | None = ".state/fetch-audit.ndjson"
    workspace_dir: str | None = None
    max_candidates: int = Field(default=10, ge=1)


class FetchConfig(BaseModel):
    """Root of devfetch.yml, merged over the built-in catalogue."""

    settings: FetchSettings = Field(default_factory=FetchSettings)
    tools: dict[str, ToolSpec] = Field(default_factory=dict)
    base_dir: Path = Field(default_factory=Path.cwd)
    config_path: Path | None = None

    @field_validator("tools")
    @classmethod
    def _name_tools(cls, tools: dict[str, ToolSpec]) -> dict[str, ToolSpec]:
        for name, spec in tools.items():
            if not spec.name:
                spec.name = name
        return tools

    def resolve_path(self, value: str | None) -> Path | None:
        """Resolve a settings path relative to the config file's directory."""
        if not value:
            return None
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.base_dir / path

    @property
    def pinned_table_path(self) -> Path:
        path = self.resolve_path(self.settings.pinned_table)
        assert path is not None
        return path

    @property
    def keyring_path(self) -> Path:
        path = self.resolve_path(self.settings.keyring_dir)
        assert path is not None
        return path

    @property
    def audit_log_path(self) -> Path | None:
        return self.resolve_path(self.settings.audit_log)

    def tool(self, name: str) -> ToolSpec | None:
        return self.tools.get(name)
