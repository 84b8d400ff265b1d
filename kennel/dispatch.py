#!/usr/bin/env python3
"""Dispatch scheduler - invoked on every heartbeat to repair stuck dogs and hand out plugins.

One cycle, in order:

1. Stuck repair: every working dog whose session is dead goes back to idle.
   A probe that errors is skipped, never treated as dead.
2. Dispatch: for each discovered plugin whose gate allows it, claim an idle
   dog, start its session (rolling the claim back if that fails) and mail
   it the plugin instructions. Mail failure after a successful start is
   logged but not rolled back: the session is live and will idle out.

Per-dog and per-plugin failures are logged and counted, never raised, so a
cycle always completes and the next heartbeat can run.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime

from .dogs import DogManager, DogState
from .errors import KennelError
from .locking import try_lock
from .mail import Message, MessageType, Router
from .plugins import Plugin, Scanner
from .runs import GateEvaluator, RunRecorder
from .sessions import SessionController, StartOptions

logger = logging.getLogger(__name__)

WORK_PREFIX = "plugin:"


@dataclass
class DispatchSettings:
    """Role-level settings threaded in explicitly rather than read from the environment."""

    sender: str = "daemon"
    cycle_timeout: float = 120.0  # seconds; 0 disables the deadline
    paused: bool = False
    mail_prefix: str = "dog/"


@dataclass
class CycleReport:
    """Aggregate outcome of one dispatch cycle."""

    repaired: int = 0
    probe_errors: int = 0
    dispatched: int = 0
    skipped: int = 0
    failed: int = 0
    deferred: int = 0
    timed_out: bool = False
    paused: bool = False
    errors: list[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.paused:
            return "paused: nothing done"
        parts = [
            f"repaired={self.repaired}",
            f"dispatched={self.dispatched}",
            f"skipped={self.skipped}",
            f"failed={self.failed}",
            f"deferred={self.deferred}",
        ]
        if self.probe_errors:
            parts.append(f"probe_errors={self.probe_errors}")
        if self.timed_out:
            parts.append("timed_out")
        return " ".join(parts)


class DispatchScheduler:
    """Runs dispatch cycles over the dog registry, plugins and sessions.

    Args:
        manager: Dog registry (sole mutator of dog state)
        sessions: Session controller used to start and probe dog sessions
        scanner: Plugin scanner, consulted fresh every cycle
        gates: Gate evaluator deciding plugin eligibility
        recorder: Run recorder, fed one record per plugin that reached a session
        router: Mail router for handing instructions to dogs
        settings: Sender identity, cycle deadline and pause flag
    """

    def __init__(
        self,
        manager: DogManager,
        sessions: SessionController,
        scanner: Scanner,
        gates: GateEvaluator,
        recorder: RunRecorder,
        router: Router,
        settings: DispatchSettings | None = None,
    ):
        self.manager = manager
        self.sessions = sessions
        self.scanner = scanner
        self.gates = gates
        self.recorder = recorder
        self.router = router
        self.settings = settings or DispatchSettings()

    # -- entry point ---------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        """Run one full cycle. Safe to call on any schedule."""
        report = CycleReport()
        if self.settings.paused:
            logger.info("dispatch paused, skipping cycle")
            report.paused = True
            return report

        deadline = None
        if self.settings.cycle_timeout and self.settings.cycle_timeout > 0:
            deadline = time.monotonic() + self.settings.cycle_timeout

        self.repair_stuck_dogs(report)
        self.dispatch_plugins(report, deadline=deadline)

        logger.info("dispatch cycle complete: %s", report.summary())
        return report

    # -- step 1: stuck repair ------------------------------------------------

    def repair_stuck_dogs(self, report: CycleReport) -> None:
        """Return working dogs with dead sessions to idle."""
        for name in self.manager.names:
            try:
                dog = self.manager.get(name)
            except KennelError as e:
                logger.warning("stuck repair: cannot read dog %s: %s", name, e)
                report.errors.append(f"read {name}: {e}")
                continue

            if dog.state != DogState.WORKING:
                continue

            try:
                running = self.sessions.is_running(dog.name)
            except Exception as e:
                # Unknown is not dead: the session may still be starting
                logger.warning("stuck repair: cannot probe session for dog %s: %s", dog.name, e)
                report.probe_errors += 1
                continue

            if running:
                continue

            logger.info("dog %s is working on %s but its session is dead, clearing",
                        dog.name, dog.work)
            try:
                self.manager.clear_work(dog.name, reason="session dead")
                report.repaired += 1
            except KennelError as e:
                logger.warning("stuck repair: failed to clear dog %s: %s", dog.name, e)
                report.errors.append(f"clear {dog.name}: {e}")

    # -- step 2: dispatch ----------------------------------------------------

    def dispatch_plugins(self, report: CycleReport, deadline: float | None = None) -> None:
        """Hand eligible plugins to idle dogs, in discovery order."""
        try:
            plugins = self.scanner.discover_all()
        except (KennelError, OSError) as e:
            logger.warning("dispatch: plugin discovery failed: %s", e)
            report.errors.append(f"discover: {e}")
            return

        if not plugins:
            logger.debug("dispatch: no plugins discovered")
            return

        for index, plugin in enumerate(plugins):
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(
                    "dispatch: cycle timeout reached, abandoning %d remaining plugin(s)",
                    len(plugins) - index,
                )
                report.timed_out = True
                return

            eligible, reason = self.gates.evaluate(plugin)
            if not eligible:
                logger.debug("plugin %s: blocked by gate: %s", plugin.name, reason)
                report.skipped += 1
                continue

            try:
                idle = self.manager.get_idle_dog()
            except KennelError as e:
                logger.warning("dispatch: cannot look for an idle dog: %s", e)
                report.errors.append(f"idle lookup: {e}")
                report.deferred += len(plugins) - index
                return

            if idle is None:
                remaining = len(plugins) - index
                logger.info("dispatch: no idle dogs, deferring %d plugin(s)", remaining)
                report.deferred += remaining
                return

            if self._dispatch_one(plugin, idle.name, report):
                report.dispatched += 1
            else:
                report.failed += 1

    def _dispatch_one(self, plugin: Plugin, dog_name: str, report: CycleReport) -> bool:
        """Assign, start and notify. Returns True if a session was started."""
        work = f"{WORK_PREFIX}{plugin.name}"

        try:
            self.manager.assign_work(dog_name, work)
        except KennelError as e:
            logger.warning("dispatch: failed to assign %s to dog %s: %s", work, dog_name, e)
            report.errors.append(f"assign {dog_name}: {e}")
            return False

        try:
            self.sessions.start(dog_name, StartOptions(work_description=work))
        except Exception as e:
            logger.warning("dispatch: failed to start session for dog %s: %s", dog_name, e)
            report.errors.append(f"start {dog_name}: {e}")
            try:
                self.manager.clear_work(dog_name, reason="session start failed")
            except KennelError as clear_err:
                logger.error("dispatch: rollback of dog %s failed: %s", dog_name, clear_err)
                report.errors.append(f"rollback {dog_name}: {clear_err}")
            return False

        result = "dispatched"
        message = Message(
            from_addr=self.settings.sender,
            to=f"{self.settings.mail_prefix}{dog_name}",
            subject=f"Plugin: {plugin.name}",
            body=plugin.instructions,
            type=MessageType.TASK,
        )
        try:
            self.router.send(message)
        except KennelError as e:
            # Session is already live; the dog finds no mail and idles out
            logger.warning("dispatch: failed to mail dog %s: %s", dog_name, e)
            report.errors.append(f"mail {dog_name}: {e}")
            result = "mail_failed"

        try:
            self.recorder.record_run(plugin.name, result=result, dog=dog_name)
        except KennelError as e:
            logger.warning("dispatch: failed to record run of %s: %s", plugin.name, e)
            report.errors.append(f"record {plugin.name}: {e}")

        logger.info("dispatched plugin %s to dog %s", plugin.name, dog_name)
        return True


# =============================================================================
# Wiring and entry point
# =============================================================================


def build_scheduler(config: dict | None = None) -> DispatchScheduler:
    """Build a DispatchScheduler from kennel.yaml."""
    from .config import (
        get_dispatch_config,
        get_dog_names,
        get_dogs_dir,
        get_inline_plugins,
        get_mail_dir,
        get_plugins_dir,
        get_rigs,
        get_runs_dir,
        get_session_config,
        load_config,
    )
    from .sessions import TmuxSessionController

    if config is None:
        config = load_config()

    session_cfg = get_session_config(config)
    dispatch_cfg = get_dispatch_config(config)
    recorder = RunRecorder(get_runs_dir())

    return DispatchScheduler(
        manager=DogManager(get_dogs_dir(), get_dog_names(config)),
        sessions=TmuxSessionController(
            command=session_cfg["command"],
            cwd=session_cfg["cwd"],
            timeout=float(session_cfg["timeout"]),
            prefix=session_cfg["prefix"],
        ),
        scanner=Scanner(
            town_dir=get_plugins_dir(),
            rig_dirs={rig: root / "plugins" for rig, root in get_rigs(config).items()},
            inline=get_inline_plugins(config),
        ),
        gates=GateEvaluator(recorder),
        recorder=recorder,
        router=Router(get_mail_dir()),
        settings=DispatchSettings(
            sender=str(dispatch_cfg["sender"]),
            cycle_timeout=float(dispatch_cfg["cycle_timeout"] or 0),
            paused=bool(dispatch_cfg["paused"]),
            mail_prefix=str(dispatch_cfg["mail_prefix"]),
        ),
    )


def run_dispatch() -> CycleReport | None:
    """Run one cycle under the global scheduler lock.

    Returns:
        The cycle report, or None if another scheduler holds the lock
    """
    from .config import get_scheduler_lock_path

    with try_lock(get_scheduler_lock_path()) as acquired:
        if not acquired:
            logger.info("another dispatch cycle is running, skipping this tick")
            return None
        return build_scheduler().run_cycle()


def setup_logging(debug: bool = False) -> None:
    """Log to stderr, and to a dated file under the logs directory."""
    from .config import get_logs_dir

    root = logging.getLogger("kennel")
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    formatter = logging.Formatter("[%(asctime)s] [%(levelname)s] %(name)s: %(message)s")

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        root.addHandler(console)

    try:
        logs_dir = get_logs_dir()
        logs_dir.mkdir(parents=True, exist_ok=True)
        date_str = datetime.now().strftime("%Y-%m-%d")
        file_handler = logging.FileHandler(logs_dir / f"kennel-{date_str}.log")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as e:
        root.warning("file logging unavailable: %s", e)


def main() -> None:
    """Entry point for kennel-dispatch."""
    parser = argparse.ArgumentParser(description="Run one kennel dispatch cycle")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging to .kennel/runtime/logs/",
    )
    args = parser.parse_args()

    setup_logging(args.debug)

    try:
        report = run_dispatch()
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if report is None:
        print("Another dispatch cycle is running, exiting")
        return
    print(f"[{datetime.now().isoformat()}] {report.summary()}")


if __name__ == "__main__":
    main()
