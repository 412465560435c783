"""
Tests for the spark worker main loop.

The loop runs against an in-memory catalog. Signals are delivered by calling
the SignalFlags handlers directly, from commit hooks or a timer thread.
"""

from __future__ import annotations

import os
import threading
import time

import pytest
from structlog.testing import capture_logs

from worker_spark.config import MAX_INTERVAL, ConfigState
from worker_spark.db import QueryResult, ResultKind
from worker_spark.errors import QueryError
from worker_spark.latch import HostWatch, Latch
from worker_spark.loop import ExitReason, LoopState, MainLoop
from worker_spark.signals import SignalFlags


class RecordingLatch(Latch):
    """Latch that remembers the timeout of every wait."""

    def __init__(self) -> None:
        super().__init__()
        self.timeouts: list[float | None] = []

    def wait(self, timeout, host_watch=None):
        self.timeouts.append(timeout)
        return super().wait(timeout, host_watch)


@pytest.fixture
def latch():
    latch = RecordingLatch()
    yield latch
    latch.close()


@pytest.fixture
def flags(latch) -> SignalFlags:
    return SignalFlags(latch)


def stop_after(flags: SignalFlags, cycles: int, fast: bool = True):
    """Commit hook: request shutdown once ``cycles`` cycles committed.

    With ``fast`` the latch is set after each earlier cycle so the next wait
    returns at once.
    """

    def on_commit(cycle: int) -> None:
        if cycle >= cycles:
            flags.on_terminate_signal()
        elif fast:
            flags.latch.set()

    return on_commit


def problems(logs: list[dict]) -> list[dict]:
    return [entry for entry in logs if entry["log_level"] in ("error", "critical")]


class TestCycle:
    def test_existing_procedure_fires_once(self, config_state, flags, catalog, database):
        database.on_commit = stop_after(flags, 1)
        loop = MainLoop(config_state, flags, database)

        with capture_logs() as logs:
            reason = loop.run()

        assert reason is ExitReason.SHUTDOWN
        assert reason.status == 0
        assert catalog.invocations == [("public", "spark_fn")]
        assert database.commits == 1
        assert loop.stats.fired == 1
        assert problems(logs) == []

    def test_missing_procedure_does_nothing(self, settings_source, flags, catalog, database):
        settings_source.values["procedure"] = "missing_fn"

        database.on_commit = stop_after(flags, 1)
        loop = MainLoop(ConfigState(settings_factory=settings_source), flags, database)

        with capture_logs() as logs:
            reason = loop.run()

        assert reason is ExitReason.SHUTDOWN
        assert catalog.lookups == [("public", "missing_fn")]
        assert catalog.invocations == []
        assert database.commits == 1
        assert loop.stats.not_found == 1
        assert problems(logs) == []

    def test_run_cycle_directly(self, config_state, flags, catalog, database):
        loop = MainLoop(config_state, flags, database)

        loop.run_cycle()
        loop.run_cycle()

        assert [event[:2] for event in database.events] == [
            ("begin", 1),
            ("commit", 1),
            ("begin", 2),
            ("commit", 2),
        ]
        assert loop.stats.cycles == 2
        assert loop.state is LoopState.EXECUTING


class TestNoOverlap:
    def test_cycles_are_strictly_sequential(self, config_state, flags, catalog, database):
        database.on_commit = stop_after(flags, 4)
        loop = MainLoop(config_state, flags, database)

        loop.run()

        assert database.max_active == 1
        names = [name for name, _, _ in database.events]
        assert names == ["begin", "commit"] * 4
        cycles = [cycle for _, cycle, _ in database.events]
        assert cycles == [1, 1, 2, 2, 3, 3, 4, 4]

    def test_new_cycle_starts_after_previous_commit(self, config_state, flags, catalog, database):
        database.on_commit = stop_after(flags, 3)
        MainLoop(config_state, flags, database).run()

        stamps = [stamp for _, _, stamp in database.events]
        assert stamps == sorted(stamps)


@pytest.mark.slow
class TestInterval:
    def test_invocations_are_spaced_by_interval(self, config_state, flags, catalog, database):
        database.on_commit = stop_after(flags, 3, fast=False)
        start = time.monotonic()

        MainLoop(config_state, flags, database).run()

        begins = [stamp for name, _, stamp in database.events if name == "begin"]
        assert len(begins) == 3
        assert begins[0] - start >= 0.95
        for earlier, later in zip(begins, begins[1:]):
            assert later - earlier >= 0.95


class TestSignals:
    def test_terminate_before_start_never_executes(self, config_state, flags, database):
        flags.on_terminate_signal()

        reason = MainLoop(config_state, flags, database).run()

        assert reason is ExitReason.SHUTDOWN
        assert database.events == []

    def test_terminate_interrupts_long_wait(self, settings_source, flags, database):
        settings_source.values["interval"] = 3600
        loop = MainLoop(ConfigState(settings_factory=settings_source), flags, database)
        outcome: list[ExitReason] = []
        thread = threading.Thread(target=lambda: outcome.append(loop.run()))

        thread.start()
        time.sleep(0.1)
        start = time.monotonic()
        flags.on_terminate_signal()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert time.monotonic() - start < 2.0
        assert outcome == [ExitReason.SHUTDOWN]
        assert database.events == []
        assert loop.state is LoopState.TERMINATING

    @pytest.mark.parametrize("interval", [MAX_INTERVAL, 30 * 24 * 3600])
    def test_terminate_interrupts_longest_interval(self, settings_source, flags, database, interval):
        settings_source.values["interval"] = interval
        loop = MainLoop(ConfigState(settings_factory=settings_source), flags, database)
        timer = threading.Timer(0.2, flags.on_terminate_signal)

        timer.start()
        reason = loop.run()
        timer.join()

        assert reason is ExitReason.SHUTDOWN
        assert database.events == []
        assert flags.latch.timeouts == [interval]

    def test_terminate_during_cycle_lets_it_commit(self, config_state, flags, catalog, database):
        catalog.on_invoke = lambda key: flags.on_terminate_signal()

        reason = MainLoop(config_state, flags, database).run()

        assert reason is ExitReason.SHUTDOWN
        assert [name for name, _, _ in database.events] == ["begin", "commit"]

    def test_reload_takes_effect_at_next_wake(self, settings_source, flags, latch, catalog, database):
        catalog.procedures[("public", "other_fn")] = "f"
        config_state = ConfigState(settings_factory=settings_source)

        def on_commit(cycle: int) -> None:
            if cycle == 1:
                settings_source.values.update(interval=3600, procedure="other_fn")
                flags.on_reload_signal()
            else:
                threading.Timer(0.2, flags.on_terminate_signal).start()

        database.on_commit = on_commit
        loop = MainLoop(config_state, flags, database)

        reason = loop.run()

        assert reason is ExitReason.SHUTDOWN
        # The wait already in progress keeps its interval; the next one uses the new value.
        assert latch.timeouts == [1, 1, 3600]
        assert catalog.invocations == [("public", "spark_fn"), ("public", "other_fn")]
        assert loop.stats.reloads == 1
        assert config_state.current.interval_seconds == 3600

    def test_reload_without_change_still_runs_cycle(self, config_state, flags, catalog, database):
        def on_commit(cycle: int) -> None:
            if cycle == 1:
                flags.on_reload_signal()
            else:
                flags.on_terminate_signal()

        database.on_commit = on_commit
        loop = MainLoop(config_state, flags, database)

        loop.run()

        assert catalog.invocations == [("public", "spark_fn")] * 2
        assert loop.stats.reloads == 1


class TestHostDeath:
    def test_host_death_exits_without_executing(self, config_state, flags, database):
        watch, write_fd = HostWatch.pipe()
        os.close(write_fd)
        try:
            with capture_logs() as logs:
                reason = MainLoop(config_state, flags, database, host_watch=watch).run()
        finally:
            watch.close()

        assert reason is ExitReason.HOST_DEATH
        assert reason.status == 1
        assert database.events == []
        assert not database.closed
        assert any(entry["event"] == "host_died" for entry in logs)

    def test_host_death_during_wait(self, settings_source, flags, database):
        settings_source.values["interval"] = 3600
        watch, write_fd = HostWatch.pipe()
        loop = MainLoop(ConfigState(settings_factory=settings_source), flags, database, host_watch=watch)
        timer = threading.Timer(0.1, os.close, args=(write_fd,))
        try:
            timer.start()
            reason = loop.run()
        finally:
            timer.join()
            watch.close()

        assert reason is ExitReason.HOST_DEATH


class TestFatal:
    def test_invocation_error_rolls_back_and_exits(self, config_state, flags, catalog, database):
        catalog.invoke_response = QueryError("cannot query the database: division by zero")
        loop = MainLoop(config_state, flags, database)

        with capture_logs() as logs:
            reason = loop.run()

        assert reason is ExitReason.FATAL
        assert reason.status == 1
        assert [name for name, _, _ in database.events] == ["begin", "rollback"]
        fatal = [entry for entry in logs if entry["event"] == "spark_worker_fatal"]
        assert len(fatal) == 1
        assert fatal[0]["log_level"] == "critical"
        assert fatal[0]["error_type"] == "QueryError"

    def test_unexpected_lookup_result_is_fatal(self, config_state, flags, catalog, database):
        catalog.lookup_response = QueryResult(ResultKind.COMMAND, "SET")

        reason = MainLoop(config_state, flags, database).run()

        assert reason is ExitReason.FATAL
        assert catalog.invocations == []
        assert database.events[-1][0] == "rollback"

    def test_fatal_after_successful_cycles(self, config_state, flags, catalog, database):
        def on_commit(cycle: int) -> None:
            catalog.invoke_response = QueryResult(ResultKind.COMMAND, "DO")
            flags.latch.set()

        database.on_commit = on_commit
        loop = MainLoop(config_state, flags, database)

        reason = loop.run()

        assert reason is ExitReason.FATAL
        assert loop.stats.fired == 1
        assert [name for name, _, _ in database.events] == ["begin", "commit", "begin", "rollback"]
