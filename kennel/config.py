"""Configuration loading and path helpers for the kennel."""

import os
from pathlib import Path
from typing import Any

import yaml


CONFIG_FILENAME = "kennel.yaml"

# Defaults (can be overridden in kennel.yaml)
DEFAULT_SESSION_CONFIG = {
    "command": "claude",
    "cwd": ".",
    "timeout": 30,
    "prefix": "kennel-dog-",
}

DEFAULT_DISPATCH_CONFIG = {
    "cycle_timeout": 120,
    "sender": "daemon",
    "paused": False,
    "mail_prefix": "dog/",
}

DEFAULT_PENDING_MAX_AGE = "10m"


def get_kennel_dir() -> Path:
    """Get the .kennel directory.

    Can be overridden via the KENNEL_DIR environment variable (used by tests
    and by daemons that run outside the project tree).
    """
    env_override = os.environ.get("KENNEL_DIR")
    if env_override:
        return Path(env_override)
    return Path.cwd() / ".kennel"


def get_config_path() -> Path:
    """Get path to kennel.yaml."""
    return get_kennel_dir() / CONFIG_FILENAME


def get_runtime_dir() -> Path:
    """Get the runtime directory for mutable state.

    Returns:
        Path to .kennel/runtime/ (gitignored)
    """
    return get_kennel_dir() / "runtime"


def get_dogs_dir() -> Path:
    """Get the directory holding one state directory per dog."""
    return get_runtime_dir() / "dogs"


def get_runs_dir() -> Path:
    """Get the plugin run-history directory."""
    return get_runtime_dir() / "runs"


def get_logs_dir() -> Path:
    """Get the logs directory."""
    return get_runtime_dir() / "logs"


def get_mail_dir() -> Path:
    """Get the root directory under which every mailbox lives."""
    return get_kennel_dir() / "mail"


def get_plugins_dir() -> Path:
    """Get the town-level plugins directory."""
    return get_kennel_dir() / "plugins"


def get_scheduler_lock_path() -> Path:
    """Get path to the global scheduler lock file."""
    return get_runtime_dir() / "scheduler.lock"


def load_config() -> dict[str, Any]:
    """Load kennel.yaml.

    Raises:
        FileNotFoundError: If the config file does not exist
    """
    config_path = get_config_path()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Kennel config not found at {config_path}. "
            "Create it with at least a 'dogs:' list."
        )

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"{config_path} must contain a mapping, got {type(config).__name__}")
    return config


def _load_or_empty() -> dict[str, Any]:
    try:
        return load_config()
    except FileNotFoundError:
        return {}


def get_dog_names(config: dict[str, Any] | None = None) -> list[str]:
    """Get the configured fleet of dog names (deduplicated, in config order)."""
    if config is None:
        config = _load_or_empty()
    names: list[str] = []
    for entry in config.get("dogs", []) or []:
        # Allow either "rex" or {"name": "rex"}
        name = entry.get("name", "") if isinstance(entry, dict) else str(entry)
        name = name.strip()
        if name and name not in names:
            names.append(name)
    return names


def get_rigs(config: dict[str, Any] | None = None) -> dict[str, Path]:
    """Get rig name -> rig root directory.

    Relative rig paths are resolved against the kennel directory's parent.
    """
    if config is None:
        config = _load_or_empty()
    rigs = config.get("rigs", {}) or {}
    base = get_kennel_dir().parent
    result: dict[str, Path] = {}
    for name, raw in rigs.items():
        path = Path(raw) if raw else base / name
        if not path.is_absolute():
            path = base / path
        result[str(name)] = path
    return result


def get_inline_plugins(config: dict[str, Any] | None = None) -> list[dict[str, Any]]:
    """Get plugin definitions declared directly in kennel.yaml."""
    if config is None:
        config = _load_or_empty()
    plugins = config.get("plugins", []) or []
    return [p for p in plugins if isinstance(p, dict)]


def get_session_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Get session controller settings merged over defaults."""
    if config is None:
        config = _load_or_empty()
    result = DEFAULT_SESSION_CONFIG.copy()
    result.update(config.get("session", {}) or {})
    return result


def get_dispatch_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Get dispatch settings merged over defaults.

    A PAUSE file in the kennel directory forces paused=True regardless of
    the config value (touch .kennel/PAUSE to pause, rm to resume).
    """
    if config is None:
        config = _load_or_empty()
    result = DEFAULT_DISPATCH_CONFIG.copy()
    result.update(config.get("dispatch", {}) or {})
    if (get_kennel_dir() / "PAUSE").exists():
        result["paused"] = True
    return result


def get_pending_max_age(config: dict[str, Any] | None = None) -> str:
    """Get the staleness threshold for pending spawns, as a duration string."""
    if config is None:
        config = _load_or_empty()
    pending = config.get("pending", {}) or {}
    return str(pending.get("max_age", DEFAULT_PENDING_MAX_AGE))
