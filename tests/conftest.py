"""Shared test fixtures for kennel tests."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from kennel.mail import Mailbox, Router


@pytest.fixture
def kennel_dir(tmp_path, monkeypatch):
    """Point KENNEL_DIR at a fresh .kennel directory with a minimal config."""
    root = tmp_path / ".kennel"
    root.mkdir()
    (root / "kennel.yaml").write_text("""
dogs:
  - alpha
  - bravo
dispatch:
  sender: daemon
  cycle_timeout: 60
pending:
  max_age: 5m
""")
    monkeypatch.setenv("KENNEL_DIR", str(root))
    return root


@pytest.fixture
def router(tmp_path) -> Router:
    return Router(tmp_path / "mail", lock_timeout=2.0)


@pytest.fixture
def mailbox(tmp_path) -> Mailbox:
    return Mailbox(tmp_path / "mail" / "deacon", lock_timeout=2.0)


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def write_plugin():
    """Factory creating <root>/<name>/plugin.md; ``gate`` is raw front matter lines."""

    def _write(root: Path, name: str, body: str = "Do the thing.", gate: str = "") -> Path:
        plugin_dir = root / name
        plugin_dir.mkdir(parents=True, exist_ok=True)
        path = plugin_dir / "plugin.md"
        path.write_text(f"---\nname: {name}\n{gate}---\n{body}\n")
        return path

    return _write
