"""Session controller adapter: start and probe the long-lived dog sessions.

The dispatch scheduler only needs two things from the outside world:
"start a session for dog X doing Y" and "is dog X's session alive". The
SessionController protocol captures exactly that; TmuxSessionController is
the production implementation, one detached tmux session per dog.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .errors import SessionProbeError, StartError

logger = logging.getLogger(__name__)

DEFAULT_SESSION_PREFIX = "kennel-dog-"

# tmux stderr fragments that mean "definitely not running", as opposed to
# "could not find out"
_NOT_RUNNING_MARKERS = (
    "can't find session",
    "no server running",
    "session not found",
)


def _means_not_running(stderr: str) -> bool:
    text = stderr.lower()
    if any(marker in text for marker in _NOT_RUNNING_MARKERS):
        return True
    # No socket means no server; any other connect error (permissions) is unknown
    return "error connecting to" in text and "no such file or directory" in text


@dataclass
class StartOptions:
    """What a new session should be doing."""

    work_description: str
    env: dict[str, str] = field(default_factory=dict)


class SessionController(Protocol):
    def start(self, name: str, options: StartOptions) -> None:
        """Bring up a session for the dog. Raises StartError on failure."""
        ...

    def is_running(self, name: str) -> bool:
        """Liveness probe. Raises SessionProbeError when the answer is unknown."""
        ...


def session_name(dog_name: str, prefix: str = DEFAULT_SESSION_PREFIX) -> str:
    return f"{prefix}{dog_name}"


class TmuxSessionController:
    """Runs each dog in its own detached tmux session.

    Args:
        command: Command template to run in the session. ``{dog}`` and
            ``{work}`` are substituted.
        cwd: Working directory for new sessions
        timeout: Seconds allowed for each tmux invocation
        prefix: Session name prefix
    """

    def __init__(
        self,
        command: str = "claude",
        cwd: Path | str = ".",
        timeout: float = 30,
        prefix: str = DEFAULT_SESSION_PREFIX,
    ):
        self.command = command
        self.cwd = Path(cwd)
        self.timeout = timeout
        self.prefix = prefix

    def session_name(self, dog_name: str) -> str:
        return session_name(dog_name, self.prefix)

    def is_running(self, name: str) -> bool:
        session = self.session_name(name)
        try:
            result = self._tmux("has-session", "-t", f"={session}")
        except FileNotFoundError as e:
            raise SessionProbeError(f"tmux not available: {e}", name=name) from e
        except subprocess.TimeoutExpired as e:
            raise SessionProbeError(
                f"tmux has-session for {session} timed out after {self.timeout}s", name=name
            ) from e

        if result.returncode == 0:
            return True

        stderr = (result.stderr or "").strip()
        if _means_not_running(stderr):
            return False
        raise SessionProbeError(
            f"tmux has-session for {session} failed (exit {result.returncode}): {stderr}",
            name=name,
        )

    def start(self, name: str, options: StartOptions) -> None:
        session = self.session_name(name)

        try:
            if self.is_running(name):
                raise StartError(f"session {session} already running", name=name)
        except SessionProbeError as e:
            raise StartError(f"cannot check session {session} before start: {e}", name=name) from e

        env = {
            "KENNEL_DOG": name,
            "KENNEL_WORK": options.work_description,
            **options.env,
        }
        command = self.command.format(dog=name, work=options.work_description)

        args = ["new-session", "-d", "-s", session, "-c", str(self.cwd)]
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]
        args.append(command)

        logger.debug("starting session %s: %s", session, command)
        try:
            result = self._tmux(*args)
        except FileNotFoundError as e:
            raise StartError(f"tmux not available: {e}", name=name) from e
        except subprocess.TimeoutExpired as e:
            raise StartError(
                f"tmux new-session for {session} timed out after {self.timeout}s", name=name
            ) from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip() or f"exit code {result.returncode}"
            raise StartError(f"tmux new-session for {session} failed: {stderr}", name=name)

        logger.info("started session %s (%s)", session, options.work_description)

    def _tmux(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["tmux", *args],
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )
