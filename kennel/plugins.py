"""Plugin discovery: recurring units of work handed to idle dogs.

A plugin lives in its own directory as plugin.md:

    ---
    name: stale-branch-sweep
    description: Delete merged branches
    gate:
      type: cooldown
      duration: 1h
    ---
    Instructions for the dog, in markdown...

Plugins are looked up in the town-level plugins directory first, then in
each rig's plugins directory, then inline in kennel.yaml. A later definition
with the same name replaces the earlier one, keeping its position.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

import yaml

logger = logging.getLogger(__name__)

PLUGIN_FILENAME = "plugin.md"


class GateType(str, Enum):
    COOLDOWN = "cooldown"
    CRON = "cron"
    CONDITION = "condition"
    EVENT = "event"
    MANUAL = "manual"


@dataclass
class Gate:
    """Rate limit on a plugin. Only cooldown gates are evaluated."""

    type: str
    duration: str = ""

    @property
    def is_cooldown(self) -> bool:
        return self.type == GateType.COOLDOWN.value


@dataclass
class Plugin:
    name: str
    instructions: str
    gate: Gate | None = None
    description: str = ""
    location: Path | None = None  # plugin.md path; None for inline plugins
    rig: str | None = None  # None for town-level and inline plugins


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")


def parse_duration(text: str | None) -> timedelta | None:
    """Parse a Go-style duration ("90s", "15m", "1h30m", "2d").

    Returns:
        The duration, or None if the text is empty, malformed or not positive
    """
    if not text:
        return None
    text = text.strip().lower()
    pos = 0
    total = timedelta()
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or total <= timedelta():
        return None
    return total


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _gate_from(raw: Any) -> Gate | None:
    if raw is None:
        return None
    if not isinstance(raw, dict) or not raw.get("type"):
        raise ValueError(f"gate must be a mapping with a 'type', got {raw!r}")
    return Gate(type=str(raw["type"]).strip().lower(), duration=str(raw.get("duration") or ""))


def plugin_from_dict(data: dict[str, Any], **extra: Any) -> Plugin:
    """Build a Plugin from a config mapping.

    Raises:
        ValueError: If the name is missing or the gate is malformed
    """
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValueError("plugin has no name")
    return Plugin(
        name=name,
        instructions=str(data.get("instructions") or ""),
        gate=_gate_from(data.get("gate")),
        description=str(data.get("description") or ""),
        **extra,
    )


def split_front_matter(text: str) -> tuple[dict[str, Any], str]:
    """Split a markdown document into (front matter mapping, body)."""
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, text.strip()
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            meta = yaml.safe_load("\n".join(lines[1:i])) or {}
            if not isinstance(meta, dict):
                raise ValueError("front matter must be a mapping")
            return meta, "\n".join(lines[i + 1:]).strip()
    raise ValueError("unterminated front matter")


def load_plugin_file(path: Path, rig: str | None = None) -> Plugin:
    """Load a plugin.md file. The directory name is the default plugin name.

    Raises:
        OSError, ValueError, yaml.YAMLError: On unreadable or malformed files
    """
    meta, body = split_front_matter(path.read_text(encoding="utf-8"))
    meta.setdefault("name", path.parent.name)
    meta["instructions"] = body
    return plugin_from_dict(meta, location=path, rig=rig)


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


class Scanner:
    """Discovers the current set of plugins from directories and config.

    Args:
        town_dir: Town-level plugins directory
        rig_dirs: Rig name -> that rig's plugins directory, in priority order
        inline: Plugin mappings declared directly in kennel.yaml
    """

    def __init__(
        self,
        town_dir: Path | str | None = None,
        rig_dirs: dict[str, Path] | None = None,
        inline: Iterable[dict[str, Any]] = (),
    ):
        self.town_dir = Path(town_dir) if town_dir else None
        self.rig_dirs = dict(rig_dirs or {})
        self.inline = list(inline)

    def discover_all(self) -> list[Plugin]:
        """Return all plugins in discovery order (empty list is valid)."""
        found: dict[str, Plugin] = {}

        def add(plugin: Plugin) -> None:
            if plugin.name in found:
                logger.debug("plugin %s overridden by %s", plugin.name, plugin.location or "config")
            found[plugin.name] = plugin

        if self.town_dir is not None:
            for plugin in self._scan_dir(self.town_dir, rig=None):
                add(plugin)
        for rig, rig_dir in self.rig_dirs.items():
            for plugin in self._scan_dir(rig_dir, rig=rig):
                add(plugin)
        for data in self.inline:
            try:
                add(plugin_from_dict(data))
            except ValueError as e:
                logger.warning("skipping inline plugin %r: %s", data.get("name"), e)

        return list(found.values())

    def _scan_dir(self, root: Path, rig: str | None) -> list[Plugin]:
        if not root.is_dir():
            return []
        plugins = []
        for entry in sorted(root.iterdir()):
            path = entry / PLUGIN_FILENAME
            if not entry.is_dir() or not path.is_file():
                continue
            try:
                plugins.append(load_plugin_file(path, rig=rig))
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning("skipping malformed plugin %s: %s", path, e)
        return plugins
