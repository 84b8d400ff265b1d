"""Tests for kennel.dispatch — stuck repair and plugin dispatch."""

from datetime import datetime, timedelta, timezone

import pytest

from kennel.dispatch import (
    CycleReport,
    DispatchScheduler,
    DispatchSettings,
    build_scheduler,
    run_dispatch,
)
from kennel.dogs import DogManager, DogState
from kennel.errors import SessionProbeError, StartError, StorageError
from kennel.locking import try_lock
from kennel.mail import MessageType, Router
from kennel.plugins import Scanner
from kennel.runs import GateEvaluator, RunRecorder


class FakeSessions:
    """In-memory session controller."""

    def __init__(self, running=(), probe_errors=(), start_errors=()):
        self.running = set(running)
        self.probe_errors = set(probe_errors)
        self.start_errors = set(start_errors)
        self.started = []

    def is_running(self, name):
        if name in self.probe_errors:
            raise SessionProbeError("tmux wedged", name=name)
        return name in self.running

    def start(self, name, options):
        if name in self.start_errors:
            raise StartError("no tmux", name=name)
        self.started.append((name, options.work_description))
        self.running.add(name)


class BrokenRouter(Router):
    def send(self, message):
        raise StorageError("mailbox unwritable")


@pytest.fixture()
def parts(tmp_path):
    recorder = RunRecorder(tmp_path / "runs")
    return {
        "manager": DogManager(tmp_path / "dogs", ["alpha", "bravo"]),
        "recorder": recorder,
        "gates": GateEvaluator(recorder),
        "router": Router(tmp_path / "mail"),
    }


def _scheduler(parts, sessions=None, plugins=(), settings=None, router=None):
    return DispatchScheduler(
        manager=parts["manager"],
        sessions=sessions or FakeSessions(),
        scanner=Scanner(inline=list(plugins)),
        gates=parts["gates"],
        recorder=parts["recorder"],
        router=router or parts["router"],
        settings=settings,
    )


def _plugin(name, gate=None):
    data = {"name": name, "instructions": f"Run {name}"}
    if gate:
        data["gate"] = gate
    return data


# ---------------------------------------------------------------------------
# Stuck repair
# ---------------------------------------------------------------------------


class TestRepairStuckDogs:
    def test_dead_session_cleared(self, parts):
        parts["manager"].assign_work("alpha", "plugin:old")
        report = CycleReport()
        _scheduler(parts, FakeSessions()).repair_stuck_dogs(report)

        assert parts["manager"].get("alpha").is_idle
        assert report.repaired == 1

    def test_live_session_left_alone(self, parts):
        parts["manager"].assign_work("alpha", "plugin:old")
        report = CycleReport()
        _scheduler(parts, FakeSessions(running=["alpha"])).repair_stuck_dogs(report)

        assert parts["manager"].get("alpha").state == DogState.WORKING
        assert report.repaired == 0

    def test_unknown_session_is_not_dead(self, parts):
        parts["manager"].assign_work("alpha", "plugin:a")
        parts["manager"].assign_work("bravo", "plugin:b")
        report = CycleReport()
        _scheduler(parts, FakeSessions(probe_errors=["alpha"])).repair_stuck_dogs(report)

        assert parts["manager"].get("alpha").state == DogState.WORKING
        assert parts["manager"].get("bravo").is_idle
        assert report.probe_errors == 1
        assert report.repaired == 1

    def test_idle_dogs_not_checked(self, parts):
        sessions = FakeSessions(probe_errors=["alpha", "bravo"])
        report = CycleReport()
        _scheduler(parts, sessions).repair_stuck_dogs(report)
        assert report.probe_errors == 0


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatchPlugins:
    def test_dispatch_assigns_starts_and_mails(self, parts):
        sessions = FakeSessions()
        report = _scheduler(parts, sessions, plugins=[_plugin("sweep")]).run_cycle()

        assert report.dispatched == 1
        assert sessions.started == [("alpha", "plugin:sweep")]
        assert parts["manager"].get("alpha").work == "plugin:sweep"

        inbox = parts["router"].mailbox("dog/alpha").list()
        assert len(inbox) == 1
        assert inbox[0].subject == "Plugin: sweep"
        assert inbox[0].body == "Run sweep"
        assert inbox[0].type == MessageType.TASK
        assert inbox[0].from_addr == "daemon"

        assert parts["recorder"].last_run("sweep").dog == "alpha"

    def test_plugins_go_to_dogs_in_order(self, parts):
        sessions = FakeSessions()
        _scheduler(parts, sessions, plugins=[_plugin("one"), _plugin("two")]).run_cycle()
        assert sessions.started == [("alpha", "plugin:one"), ("bravo", "plugin:two")]

    def test_no_idle_dogs_defers_rest(self, parts):
        plugins = [_plugin("one"), _plugin("two"), _plugin("three")]
        report = _scheduler(parts, plugins=plugins).run_cycle()
        assert report.dispatched == 2
        assert report.deferred == 1
        assert parts["recorder"].runs("three") == []

    def test_cooldown_gate_skips(self, parts):
        parts["recorder"].record_run("sweep", at=datetime.now(tz=timezone.utc) - timedelta(minutes=10))
        plugins = [_plugin("sweep", gate={"type": "cooldown", "duration": "1h"}), _plugin("other")]
        sessions = FakeSessions()
        report = _scheduler(parts, sessions, plugins=plugins).run_cycle()

        assert report.skipped == 1
        assert report.dispatched == 1
        assert sessions.started == [("alpha", "plugin:other")]

    def test_expired_cooldown_dispatches(self, parts):
        parts["recorder"].record_run("sweep", at=datetime.now(tz=timezone.utc) - timedelta(hours=2))
        plugins = [_plugin("sweep", gate={"type": "cooldown", "duration": "1h"})]
        report = _scheduler(parts, plugins=plugins).run_cycle()
        assert report.dispatched == 1

    def test_start_failure_rolls_back(self, parts):
        sessions = FakeSessions(start_errors=["alpha"])
        report = _scheduler(parts, sessions, plugins=[_plugin("sweep")]).run_cycle()

        assert report.failed == 1
        assert report.dispatched == 0
        assert parts["manager"].get("alpha").is_idle
        assert parts["router"].mailbox("dog/alpha").list() == []
        assert parts["recorder"].runs("sweep") == []

    def test_start_failure_retries_same_dog_for_next_plugin(self, parts):
        sessions = FakeSessions(start_errors=["alpha"])
        report = _scheduler(parts, sessions, plugins=[_plugin("one"), _plugin("two")]).run_cycle()
        # alpha is rolled back to idle, so it is picked (and fails) again
        assert report.failed == 2
        assert parts["manager"].get("bravo").is_idle

    def test_mail_failure_not_rolled_back(self, parts):
        sessions = FakeSessions()
        scheduler = _scheduler(
            parts, sessions, plugins=[_plugin("sweep")],
            router=BrokenRouter(parts["router"].mail_root),
        )
        report = scheduler.run_cycle()

        assert report.dispatched == 1
        assert parts["manager"].get("alpha").work == "plugin:sweep"
        assert parts["recorder"].last_run("sweep").result == "mail_failed"
        assert any("mail alpha" in e for e in report.errors)

    def test_assign_conflict_counts_failure(self, parts, monkeypatch):
        from kennel.errors import ConflictError

        def conflict(name, work):
            raise ConflictError("raced", name=name)

        monkeypatch.setattr(parts["manager"], "assign_work", conflict)
        sessions = FakeSessions()
        report = _scheduler(parts, sessions, plugins=[_plugin("sweep")]).run_cycle()

        assert report.failed == 1
        assert sessions.started == []

    def test_no_plugins(self, parts):
        report = _scheduler(parts).run_cycle()
        assert report.dispatched == 0
        assert report.deferred == 0

    def test_repair_frees_dog_for_same_cycle(self, parts):
        parts["manager"].assign_work("alpha", "plugin:old")
        parts["manager"].assign_work("bravo", "plugin:old2")
        sessions = FakeSessions()
        report = _scheduler(parts, sessions, plugins=[_plugin("sweep")]).run_cycle()

        assert report.repaired == 2
        assert report.dispatched == 1


class TestStorageIsolation:
    def test_corrupt_dog_does_not_stall_the_fleet(self, parts, tmp_path):
        parts["manager"] = DogManager(tmp_path / "fleet", ["alpha", "bravo", "charlie"])
        parts["manager"].assign_work("charlie", "plugin:old")
        corrupt = parts["manager"].state_path("alpha")
        corrupt.parent.mkdir(parents=True, exist_ok=True)
        corrupt.write_text("NOT JSON {{")

        sessions = FakeSessions()
        report = _scheduler(parts, sessions, plugins=[_plugin("sweep")]).run_cycle()

        assert report.repaired == 1
        assert report.dispatched == 1
        assert report.deferred == 0
        assert sessions.started == [("bravo", "plugin:sweep")]
        assert parts["manager"].get("charlie").is_idle
        assert any("read alpha" in e for e in report.errors)

    def test_unopenable_lock_fails_one_dog(self, parts):
        parts["manager"].lock_path("alpha").mkdir(parents=True)
        parts["manager"].assign_work("bravo", "plugin:old")

        sessions = FakeSessions()
        report = _scheduler(parts, sessions, plugins=[_plugin("sweep")]).run_cycle()

        # bravo's dead session is repaired; alpha is idle but cannot be claimed
        assert report.repaired == 1
        assert report.failed == 1
        assert sessions.started == []
        assert any("assign alpha" in e for e in report.errors)


class TestCycleControl:
    def test_paused_does_nothing(self, parts):
        parts["manager"].assign_work("alpha", "plugin:old")
        sessions = FakeSessions()
        report = _scheduler(
            parts, sessions, plugins=[_plugin("sweep")],
            settings=DispatchSettings(paused=True),
        ).run_cycle()

        assert report.paused
        assert report.summary() == "paused: nothing done"
        assert sessions.started == []
        assert parts["manager"].get("alpha").work == "plugin:old"

    def test_deadline_abandons_remaining(self, parts):
        report = CycleReport()
        scheduler = _scheduler(parts, plugins=[_plugin("one"), _plugin("two")])
        scheduler.dispatch_plugins(report, deadline=0.0)

        assert report.timed_out
        assert report.dispatched == 0
        assert "timed_out" in report.summary()

    def test_custom_sender_and_prefix(self, parts):
        settings = DispatchSettings(sender="deacon", mail_prefix="kennel/")
        _scheduler(parts, plugins=[_plugin("sweep")], settings=settings).run_cycle()
        inbox = parts["router"].mailbox("kennel/alpha").list()
        assert inbox[0].from_addr == "deacon"


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class TestWiring:
    def test_build_scheduler_from_config(self, kennel_dir):
        scheduler = build_scheduler()
        assert scheduler.manager.names == ["alpha", "bravo"]
        assert scheduler.settings.cycle_timeout == 60.0
        assert scheduler.router.mail_root == kennel_dir / "mail"

    def test_pause_file(self, kennel_dir):
        (kennel_dir / "PAUSE").touch()
        assert build_scheduler().settings.paused is True

    def test_run_dispatch_skips_when_locked(self, kennel_dir):
        from kennel.config import get_scheduler_lock_path

        with try_lock(get_scheduler_lock_path()) as acquired:
            assert acquired
            assert run_dispatch() is None

    def test_run_dispatch_with_nothing_to_do(self, kennel_dir):
        report = run_dispatch()
        assert report is not None
        assert report.dispatched == 0
