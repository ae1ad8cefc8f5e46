"""
Configuration loader — reads devfetch.yml into domain models.

This is the primary entry point for loading configuration.  It reads
YAML, merges the project's tools over the built-in catalogue, applies
environment overrides, and validates everything against the Pydantic
models in ``src.core.models.config``.

Environment overrides (applied last)::

    RETRY_MAX_ATTEMPTS          settings.retry.max_attempts
    RETRY_INITIAL_DELAY         settings.retry.base_delay
    RETRY_MAX_DELAY             settings.retry.max_delay
    REQUIRE_VERIFIED_DOWNLOADS  settings.require_verified
    PRODUCTION_MODE             default for REQUIRE_VERIFIED_DOWNLOADS
"""

from __future__ import annotations

import copy
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from src.core.models.config import FetchConfig

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "devfetch.yml"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for devfetch.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to devfetch.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data


def _merge_tools(catalogue: Mapping[str, Any], project: Mapping[str, Any]) -> dict[str, Any]:
    """Project tool entries override catalogue entries key by key."""
    merged = copy.deepcopy(dict(catalogue))
    for name, spec in project.items():
        if spec is None:
            merged.pop(name, None)  # ``tool: null`` removes a built-in
            continue
        if not isinstance(spec, dict):
            raise ConfigError(f"tools.{name} must be a mapping")
        base = merged.get(name) or {}
        merged[name] = {**base, **spec}
    return merged


def _env_bool(env: Mapping[str, str], name: str) -> bool | None:
    value = env.get(name)
    if value is None:
        return None
    text = value.strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{name} must be true or false, got {value!r}")


def _env_number(env: Mapping[str, str], name: str, kind: type) -> Any:
    value = env.get(name)
    if value is None or value.strip() == "":
        return None
    try:
        return kind(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


def apply_env_overrides(settings: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Overlay the retry/policy environment variables onto raw settings."""
    settings = dict(settings)
    retry = dict(settings.get("retry") or {})
    for var, key, kind in (
        ("RETRY_MAX_ATTEMPTS", "max_attempts", int),
        ("RETRY_INITIAL_DELAY", "base_delay", float),
        ("RETRY_MAX_DELAY", "max_delay", float),
    ):
        value = _env_number(env, var, kind)
        if value is not None:
            retry[key] = value
    settings["retry"] = retry

    require = _env_bool(env, "REQUIRE_VERIFIED_DOWNLOADS")
    if require is None and "require_verified" not in settings:
        require = _env_bool(env, "PRODUCTION_MODE")
    if require is not None:
        settings["require_verified"] = require
    return settings


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    catalogue: Mapping[str, Any] | None = None,
) -> FetchConfig:
    """Load and validate configuration.

    Args:
        path: Explicit path to devfetch.yml.  If None, searches upward;
            without a file the built-in catalogue and defaults are used.
        env: Environment for overrides (default: ``os.environ``).
        catalogue: Built-in tools (default: the packaged catalogue).

    Raises:
        ConfigError: If an explicit file is missing, or anything is invalid.
    """
    env = os.environ if env is None else env
    if catalogue is None:
        from src.core.data import get_registry

        catalogue = get_registry().tool_catalogue

    if path is None:
        path = find_config_file()

    data: dict[str, Any] = {}
    if path is not None:
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        logger.debug("Loading config from %s", path)
        data = _read_yaml(path)
    else:
        logger.debug("No %s found; using built-in catalogue", CONFIG_FILE)

    unknown = set(data) - {"settings", "tools"}
    if unknown:
        raise ConfigError(f"Unknown top-level keys in {path}: {', '.join(sorted(unknown))}")

    project_tools = data.get("tools") or {}
    if not isinstance(project_tools, dict):
        raise ConfigError("'tools' must be a mapping of tool name → spec")
    raw_settings = data.get("settings") or {}
    if not isinstance(raw_settings, dict):
        raise ConfigError("'settings' must be a mapping")

    payload = {
        "settings": apply_env_overrides(raw_settings, env),
        "tools": _merge_tools(catalogue, project_tools),
        "base_dir": path.parent.resolve() if path else Path.cwd(),
        "config_path": path,
    }

    try:
        config = FetchConfig.model_validate(payload)
    except Exception as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    validate_strategies(config)
    logger.info(
        "Loaded config with %d tools (require_verified=%s)",
        len(config.tools),
        config.settings.require_verified,
    )
    return config


def validate_strategies(config: FetchConfig) -> None:
    """Fail on tools naming unknown strategies or passing bad options.

    Raises:
        ConfigError: Listing every offending tool.
    """
    from src.core.services.fetch.published import build_fetcher
    from src.core.services.fetch.versions import build_source

    problems = []
    for tool in config.tools.values():
        if tool.published is not None:
            try:
                build_fetcher(tool, tool.published)
            except ValueError as e:
                problems.append(str(e))
        if tool.versions is not None:
            try:
                build_source(tool, tool.versions)
            except ValueError as e:
                problems.append(str(e))
    if problems:
        raise ConfigError("Invalid tool strategies:\n  " + "\n  ".join(problems))
