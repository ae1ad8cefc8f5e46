"""
Central data registry for static catalogs.

Loads the built-in tool catalogue (``src/core/data/tools.yml``) once at
first access and caches it for the process lifetime.  The config
loader merges project tools over it.

Usage::

    from src.core.data import get_registry

    tools = get_registry().tool_catalogue   # dict[str, dict]
"""

from __future__ import annotations

import logging
from functools import cached_property
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_DATA_DIR = Path(__file__).parent


def _load_yaml(relative_path: str) -> dict:
    """Load a YAML mapping relative to the data directory."""
    path = _DATA_DIR / relative_path
    if not path.exists():
        logger.warning("Data file not found: %s", path)
        return {}
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


class DataRegistry:
    """Central registry for all static data catalogs.

    Each property lazily loads its file on first access and caches the
    result for the lifetime of the instance.
    """

    # ── Tools ────────────────────────────────────────────────────

    @cached_property
    def tool_catalogue(self) -> dict[str, dict]:
        """Built-in tool specs keyed by tool name (node, go, terraform, …)."""
        data = _load_yaml("tools.yml").get("tools") or {}
        logger.debug("Loaded %d built-in tool definitions", len(data))
        return data


# ── Module-level singleton ──────────────────────────────────────────

_registry: DataRegistry | None = None


def get_registry() -> DataRegistry:
    """Return the process-wide registry (created on first call)."""
    global _registry  # noqa: PLW0603
    if _registry is None:
        _registry = DataRegistry()
    return _registry
