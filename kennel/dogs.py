"""Dog registry: the fleet of named workers and their idle/working state.

Each dog's state lives in <dogs_dir>/<name>/state.json and is only ever
changed under <dogs_dir>/<name>/lock, so assign_work() is a single
check-and-set even when several schedulers race for the same idle dog.

Every assign/clear is also appended to <dogs_dir>/audit.jsonl so that
"why is this dog idle?" can be answered after the fact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from .errors import ConflictError, NotFoundError, StorageError
from .locking import DEFAULT_LOCK_TIMEOUT, file_lock

logger = logging.getLogger(__name__)


class DogState(str, Enum):
    IDLE = "idle"
    WORKING = "working"


@dataclass
class Dog:
    """State of a single dog."""

    name: str
    state: DogState = DogState.IDLE
    work: str | None = None  # Present iff state is WORKING
    assigned_at: str | None = None  # ISO8601 timestamp
    last_active: str | None = None  # ISO8601 timestamp

    @property
    def is_idle(self) -> bool:
        return self.state == DogState.IDLE

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "Dog":
        """Create a Dog from its state.json contents.

        Raises:
            ValueError: If the state is unknown or contradicts the work field
        """
        state = DogState(data.get("state", DogState.IDLE.value))
        work = data.get("work") or None
        if (state == DogState.WORKING) != bool(work):
            raise ValueError(f"state={state.value} inconsistent with work={work!r}")
        return cls(
            name=name,
            state=state,
            work=work,
            assigned_at=data.get("assigned_at"),
            last_active=data.get("last_active"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class DogManager:
    """Tracks the configured fleet and owns all dog state mutations.

    Args:
        dogs_dir: Directory holding per-dog state directories
        names: Configured dog names; the fleet is exactly this set
        lock_timeout: Seconds to wait for a dog's lock before StorageError
    """

    def __init__(
        self,
        dogs_dir: Path | str,
        names: Iterable[str],
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.dogs_dir = Path(dogs_dir)
        self.names = sorted(set(names))
        self.lock_timeout = lock_timeout

    # -- paths ---------------------------------------------------------------

    def state_path(self, name: str) -> Path:
        return self.dogs_dir / name / "state.json"

    def lock_path(self, name: str) -> Path:
        return self.dogs_dir / name / "lock"

    @property
    def audit_path(self) -> Path:
        return self.dogs_dir / "audit.jsonl"

    # -- queries -------------------------------------------------------------

    def list(self) -> list[Dog]:
        """All known dogs, in name order.

        Raises:
            StorageError: If any dog's state cannot be read
        """
        return [self._load(name) for name in self.names]

    def get(self, name: str) -> Dog:
        self._require_known(name)
        return self._load(name)

    def get_idle_dog(self) -> Dog | None:
        """First idle dog by name, or None when every readable dog is busy.

        Dogs whose state cannot be read are logged and passed over.
        """
        for name in self.names:
            try:
                dog = self._load(name)
            except StorageError as e:
                logger.warning("skipping unreadable dog %s: %s", name, e)
                continue
            if dog.is_idle:
                return dog
        return None

    # -- mutations -----------------------------------------------------------

    def assign_work(self, name: str, work: str) -> Dog:
        """Claim an idle dog for a piece of work.

        Raises:
            ValueError: If work is empty
            NotFoundError: If the dog is not part of the fleet
            ConflictError: If the dog is already working
            StorageError: On I/O failure or lock timeout
        """
        if not work or not work.strip():
            raise ValueError("work description must not be empty")
        self._require_known(name)

        with self._locked(name):
            dog = self._load(name)
            if not dog.is_idle:
                raise ConflictError(
                    f"dog {name} is already working on {dog.work!r}", name=name
                )
            now = _now_iso()
            dog = Dog(
                name=name,
                state=DogState.WORKING,
                work=work,
                assigned_at=now,
                last_active=now,
            )
            self._save(dog)

        self._audit("assign", name, work=work)
        logger.info("dog %s: assigned %s", name, work)
        return dog

    def clear_work(self, name: str, reason: str = "") -> Dog:
        """Return a dog to idle. Clearing an idle dog is a no-op.

        Raises:
            NotFoundError: If the dog is not part of the fleet
            StorageError: On I/O failure or lock timeout
        """
        self._require_known(name)

        with self._locked(name):
            dog = self._load(name)
            if dog.is_idle:
                return dog
            previous = dog.work
            dog = Dog(name=name, last_active=_now_iso())
            self._save(dog)

        self._audit("clear", name, work=previous or "", reason=reason)
        logger.info("dog %s: cleared %s (%s)", name, previous, reason or "no reason given")
        return dog

    # -- internals -----------------------------------------------------------

    def _require_known(self, name: str) -> None:
        if name not in self.names:
            raise NotFoundError(f"unknown dog: {name}", name=name)

    def _locked(self, name: str):
        return file_lock(self.lock_path(name), timeout=self.lock_timeout)

    def _load(self, name: str) -> Dog:
        """Load a dog's state (Idle if it has never been written)."""
        path = self.state_path(name)
        if not path.exists():
            return Dog(name=name)
        try:
            with open(path) as f:
                data = json.load(f)
            return Dog.from_dict(name, data)
        except (OSError, json.JSONDecodeError, ValueError, AttributeError) as e:
            raise StorageError(f"cannot read state for dog {name}: {e}", path=path) from e

    def _save(self, dog: Dog) -> None:
        """Save dog state atomically using temp file + rename."""
        path = self.state_path(dog.name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".state_", suffix=".json")
        except OSError as e:
            raise StorageError(f"cannot write state for dog {dog.name}: {e}", path=path) from e

        try:
            with os.fdopen(fd, "w") as f:
                json.dump(dog.to_dict(), f, indent=2)
            os.rename(temp_path, path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise StorageError(f"cannot write state for dog {dog.name}: {e}", path=path) from e

    def _audit(self, action: str, name: str, *, work: str = "", reason: str = "") -> None:
        entry = {
            "ts": _now_iso(),
            "action": action,
            "dog": name,
            "work": work,
            "reason": reason,
        }
        try:
            self.audit_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.audit_path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.warning("dog audit log write failed: %s", e)
