"""
Config check use case — validate devfetch.yml and the pinned table.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from src.core.config.loader import ConfigError, load_config
from src.core.models.config import FetchConfig
from src.core.services.fetch.pinned import PinnedTable


@dataclass
class ConfigCheckResult:
    """Result of configuration validation."""

    valid: bool = False
    config: FetchConfig | None = None
    config_path: Path | None = None
    pin_count: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "tool_count": len(self.config.tools) if self.config else 0,
            "pin_count": self.pin_count,
            "require_verified": self.config.settings.require_verified if self.config else None,
        }


def check_config(config_path: Path | None = None) -> ConfigCheckResult:
    """Validate configuration and report issues.

    Args:
        config_path: Optional explicit path to devfetch.yml.

    Returns:
        ConfigCheckResult with validation status and any issues.
    """
    result = ConfigCheckResult()

    # Load and validate
    try:
        config = load_config(config_path)
    except ConfigError as e:
        result.errors.append(str(e))
        return result

    result.config = config
    result.config_path = config.config_path
    if config.config_path is None:
        result.warnings.append("No devfetch.yml found. Using the built-in tool catalogue.")

    try:
        pinned = PinnedTable.load(config.pinned_table_path)
        result.pin_count = len(pinned)
    except ConfigError as e:
        result.errors.append(str(e))
        pinned = None

    # Pins for tools nobody configures are never consulted
    if pinned is not None:
        orphans = sorted(set(pinned.tools()) - set(config.tools))
        if orphans:
            result.warnings.append(f"Pinned checksums for unknown tools: {', '.join(orphans)}")

    # Tools that can only ever reach the Computed tier
    signed = [name for name, tool in config.tools.items() if tool.gpg is not None]
    for name, tool in sorted(config.tools.items()):
        has_pins = pinned is not None and name in pinned.tools()
        if tool.gpg is None and tool.published is None and not has_pins:
            if config.settings.require_verified or not tool.allow_computed:
                result.errors.append(
                    f"Tool '{name}' has no GPG, pinned or published checksum source "
                    "and computed checksums are not allowed"
                )
            else:
                result.warnings.append(f"Tool '{name}' can only be verified by a computed checksum")

    if signed and not config.keyring_path.is_dir():
        result.warnings.append(
            f"Keyring directory does not exist: {config.keyring_path} "
            f"(GPG tier unavailable for {', '.join(sorted(signed))})"
        )

    # Result
    result.valid = len(result.errors) == 0
    return result
