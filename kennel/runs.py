"""Plugin run history and cooldown gate evaluation.

Run history is append-only: one JSONL file per plugin under the runs
directory, one line per dispatch that reached a live session.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .errors import StorageError
from .locking import DEFAULT_LOCK_TIMEOUT, file_lock
from .plugins import Plugin, parse_duration

logger = logging.getLogger(__name__)


@dataclass
class RunRecord:
    plugin: str
    ts: datetime
    result: str = "dispatched"
    dog: str = ""


def _safe_filename(name: str) -> str:
    """Readable file stem for a plugin name, unique per raw name."""
    readable = "".join(c if c.isalnum() or c in "-_." else "_" for c in name)
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"{readable}-{digest}"


class RunRecorder:
    """Records plugin executions and counts them within a trailing window."""

    def __init__(self, runs_dir: Path | str, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.runs_dir = Path(runs_dir)
        self.lock_timeout = lock_timeout

    def history_path(self, plugin_name: str) -> Path:
        return self.runs_dir / f"{_safe_filename(plugin_name)}.jsonl"

    def record_run(
        self,
        plugin_name: str,
        result: str = "dispatched",
        dog: str = "",
        at: datetime | None = None,
    ) -> RunRecord:
        """Append a run record.

        Raises:
            StorageError: On I/O failure or lock timeout
        """
        record = RunRecord(
            plugin=plugin_name,
            ts=at or datetime.now(tz=timezone.utc),
            result=result,
            dog=dog,
        )
        path = self.history_path(plugin_name)
        line = json.dumps({
            "plugin": record.plugin,
            "ts": record.ts.isoformat(),
            "result": record.result,
            "dog": record.dog,
        })
        try:
            with file_lock(path.with_suffix(".lock"), timeout=self.lock_timeout):
                with open(path, "a") as f:
                    f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(f"cannot record run of {plugin_name}: {e}", path=path) from e
        return record

    def runs(self, plugin_name: str) -> list[RunRecord]:
        """All recorded runs of a plugin, oldest first. Corrupt lines are skipped."""
        path = self.history_path(plugin_name)
        if not path.exists():
            return []
        records = []
        try:
            with open(path) as f:
                lines = f.readlines()
        except OSError as e:
            raise StorageError(f"cannot read run history of {plugin_name}: {e}", path=path) from e

        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                ts = datetime.fromisoformat(data["ts"])
                if ts.tzinfo is None:
                    ts = ts.replace(tzinfo=timezone.utc)
                records.append(RunRecord(
                    plugin=data.get("plugin", plugin_name),
                    ts=ts,
                    result=data.get("result", ""),
                    dog=data.get("dog", ""),
                ))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                continue
        records.sort(key=lambda r: r.ts)
        return records

    def runs_since(
        self,
        plugin_name: str,
        window: timedelta | str,
        now: datetime | None = None,
    ) -> list[RunRecord]:
        """Runs within the trailing ``window`` ending at ``now``.

        Raises:
            ValueError: If window is a string that is not a valid duration
        """
        if isinstance(window, str):
            parsed = parse_duration(window)
            if parsed is None:
                raise ValueError(f"invalid duration: {window!r}")
            window = parsed
        cutoff = (now or datetime.now(tz=timezone.utc)) - window
        return [r for r in self.runs(plugin_name) if r.ts >= cutoff]

    def count_runs_since(
        self,
        plugin_name: str,
        window: timedelta | str,
        now: datetime | None = None,
    ) -> int:
        return len(self.runs_since(plugin_name, window, now=now))

    def last_run(self, plugin_name: str) -> RunRecord | None:
        runs = self.runs(plugin_name)
        return runs[-1] if runs else None


class GateEvaluator:
    """Answers "may this plugin be dispatched now?".

    Everything that is not a well-formed cooldown gate fails open: a typo in
    a duration must not stop a plugin from ever running again.
    """

    def __init__(self, recorder: RunRecorder):
        self.recorder = recorder

    def evaluate(self, plugin: Plugin, now: datetime | None = None) -> tuple[bool, str]:
        """Evaluate a plugin's gate.

        Returns:
            (eligible, reason_if_blocked_or_fail_open_note)
        """
        gate = plugin.gate
        if gate is None:
            return (True, "")
        if not gate.is_cooldown:
            return (True, "")

        window = parse_duration(gate.duration)
        if window is None:
            logger.warning(
                "plugin %s: unparseable cooldown duration %r, treating gate as inactive",
                plugin.name, gate.duration,
            )
            return (True, f"invalid cooldown duration {gate.duration!r}")

        try:
            count = self.recorder.count_runs_since(plugin.name, window, now=now)
        except StorageError as e:
            logger.warning("plugin %s: cannot read run history (%s), treating gate as inactive",
                           plugin.name, e)
            return (True, "run history unavailable")

        if count > 0:
            return (False, f"cooldown: ran {count} time(s) in the last {gate.duration}")
        return (True, "")

    def is_eligible(self, plugin: Plugin, now: datetime | None = None) -> bool:
        return self.evaluate(plugin, now=now)[0]
