"""
tests/test_monitor.py

Manual adjustments, warning classification, resolution and sampling.
"""

import threading
from decimal import Decimal

import pytest

from chipsettle.core.config import WarningConfig
from chipsettle.core.exceptions import (
    InputValidationError,
    PlayerNotFoundError,
    PreconditionError,
    SessionNotFoundError,
    WarningNotFoundError,
)
from chipsettle.core.models import Player
from chipsettle.monitoring.models import AdjustmentType, MonitorState, WarningCode, WarningStatus
from chipsettle.monitoring.monitor import WarningMonitor, classify, split_by_chips
from chipsettle.validation.models import Severity

from helpers.session_builder import FlakySource, SessionBuilder

CHIPS = AdjustmentType.CHIP_COUNT


@pytest.fixture
def monitor_for(calculator_for, clock):
    made = []

    def _make(source, config=None):
        monitor = WarningMonitor(calculator_for(source), config or WarningConfig(), clock)
        made.append(monitor)
        return monitor

    yield _make
    for monitor in made:
        monitor.shutdown()


@pytest.fixture
def game(two_player, monitor_for):
    """(monitor, sid) over Scenario A."""
    source, sid = two_player
    return monitor_for(source), sid


def _codes(warnings):
    return [w.code for w in warnings]


def _fire(monitor, sid):
    """Run the pending sampling tick now, as its timer would."""
    monitor._tick(sid, monitor._state(sid).generation)


class TestClassification:

    @pytest.mark.parametrize("impact, expected", [
        ("0.05", None),
        ("0.10", None),
        ("0.11", Severity.MINOR),
        ("1.00", Severity.MINOR),
        ("1.01", Severity.MAJOR),
        ("5.00", Severity.MAJOR),
        ("5.01", Severity.CRITICAL),
    ])
    def test_thresholds_are_strict(self, impact, expected):
        assert classify(Decimal(impact), WarningConfig()) is expected

    def test_split_by_chips_is_exact(self):
        players = [Player("alice", "Alice", Decimal("150")), Player("bob", "Bob", Decimal("50"))]
        assert split_by_chips(Decimal("0.15"), players) == {"alice": Decimal("0.11"), "bob": Decimal("0.04")}

    def test_split_without_chips_is_even(self):
        players = [Player(pid, pid.title(), Decimal("0")) for pid in ("c", "a", "b")]
        shares = split_by_chips(Decimal("0.10"), players)
        assert shares == {"a": Decimal("0.04"), "b": Decimal("0.03"), "c": Decimal("0.03")}


class TestAdjustments:

    def test_small_discrepancy_is_minor_and_correctable(self, game):
        monitor, sid = game
        warnings = monitor.record_manual_adjustment(sid, "alice", CHIPS, "0.15", actor="dealer").unwrap()
        (warning,) = warnings
        assert warning.code is WarningCode.BALANCE_DISCREPANCY
        assert warning.severity is Severity.MINOR
        assert warning.can_proceed
        assert not warning.requires_approval
        assert warning.affected_players == ["alice"]

        correction = warning.auto_correction
        assert correction.total == Decimal("0.15")
        shares = {c.player_id: c.share for c in correction.corrections}
        assert shares == {"alice": Decimal("0.11"), "bob": Decimal("0.04")}
        alice = correction.corrections[0]
        assert alice.suggested_chips == alice.original_chips - Decimal("0.11")
        assert correction.is_reversible
        assert len(correction.rollback) == 2

    def test_negative_delta_corrects_upwards(self, game):
        monitor, sid = game
        (warning,) = monitor.record_manual_adjustment(sid, "bob", CHIPS, "-0.20", actor="dealer").unwrap()
        for c in warning.auto_correction.corrections:
            assert c.suggested_chips == c.original_chips + c.share

    def test_below_minor_threshold_is_silent(self, game):
        monitor, sid = game
        assert monitor.record_manual_adjustment(sid, "alice", CHIPS, "0.05", actor="dealer").unwrap() == []
        assert len(monitor.adjustment_history(sid)) == 1

    def test_major_needs_approval_without_correction(self, game):
        monitor, sid = game
        (warning,) = monitor.record_manual_adjustment(sid, "alice", CHIPS, "2.50", actor="dealer").unwrap()
        assert warning.severity is Severity.MAJOR
        assert warning.can_proceed
        assert warning.requires_approval
        assert warning.auto_correction is None

    def test_critical_blocks_settlement_until_resolved(self, game):
        monitor, sid = game
        (warning,) = monitor.record_manual_adjustment(sid, "alice", CHIPS, "10", actor="dealer").unwrap()
        assert warning.severity is Severity.CRITICAL
        assert not warning.can_proceed
        assert warning.suggested_actions[0].startswith("STOP")
        assert not monitor.can_settle(sid)

        monitor.resolve_warning(warning.warning_id, "recounted", "chips were stacked wrong").unwrap()
        assert monitor.can_settle(sid)

    def test_large_adjustment(self, game):
        monitor, sid = game
        warnings = monitor.record_manual_adjustment(
            sid, "bob", AdjustmentType.BUY_IN, "-150", actor="host", reason="refund",
        ).unwrap()
        assert _codes(warnings) == [WarningCode.BALANCE_DISCREPANCY, WarningCode.LARGE_ADJUSTMENT]
        large = warnings[1]
        assert large.severity is Severity.MAJOR
        assert large.can_proceed
        assert large.requires_approval
        assert large.balance_impact == Decimal("150")

    def test_frequent_adjustments_warn_once(self, game, clock):
        monitor, sid = game
        seen = []
        for _ in range(6):
            seen += monitor.record_manual_adjustment(sid, "alice", CHIPS, "0.05", actor="dealer").unwrap()
            clock.advance(minutes=1)
        assert _codes(seen) == [WarningCode.FREQUENT_ADJUSTMENTS]
        assert seen[0].severity is Severity.MAJOR
        assert seen[0].balance_impact == Decimal("0.25")

    def test_adjustments_outside_window_do_not_count(self, game, clock):
        monitor, sid = game
        for _ in range(6):
            assert monitor.record_manual_adjustment(sid, "alice", CHIPS, "0.05", actor="dealer").unwrap() == []
            clock.advance(minutes=10)

    def test_position_warnings_are_deduplicated(self, monitor_for):
        source, sid = (
            SessionBuilder()
            .player("alice", buy_in=100,  chips=2300)
            .player("bob",   buy_in=1200, chips=0)
            .build()
        )
        monitor = monitor_for(source)
        first = monitor.record_manual_adjustment(sid, "alice", CHIPS, "0.05", actor="dealer").unwrap()
        assert sorted(c.value for c in _codes(first)) == ["LARGE_NEGATIVE_POSITION", "LARGE_POSITIVE_POSITION"]
        negative = next(w for w in first if w.code is WarningCode.LARGE_NEGATIVE_POSITION)
        assert negative.requires_approval
        assert negative.affected_players == ["bob"]

        again = monitor.record_manual_adjustment(sid, "alice", CHIPS, "0.05", actor="dealer").unwrap()
        assert again == []

    def test_per_call_config(self, game):
        monitor, sid = game
        strict = WarningConfig(minor_threshold=Decimal("0.01"))
        (warning,) = monitor.record_manual_adjustment(
            sid, "alice", CHIPS, "0.05", actor="dealer", config=strict,
        ).unwrap()
        assert warning.severity is Severity.MINOR

    def test_type_accepts_wire_value(self, game):
        monitor, sid = game
        assert monitor.record_manual_adjustment(sid, "alice", "chip_count_adjustment", "0.05", "dealer").ok
        assert monitor.adjustment_history(sid)[0].adjustment_type is CHIPS

    @pytest.mark.parametrize("player, kind, delta, actor, error", [
        ("alice", "magic",  "1",   "dealer", InputValidationError),
        ("alice", CHIPS,    "abc", "dealer", InputValidationError),
        ("alice", CHIPS,    "0",   "dealer", InputValidationError),
        ("alice", CHIPS,    "1",   "",       InputValidationError),
        ("zoe",   CHIPS,    "1",   "dealer", PlayerNotFoundError),
    ])
    def test_invalid_input(self, game, player, kind, delta, actor, error):
        monitor, sid = game
        res = monitor.record_manual_adjustment(sid, player, kind, delta, actor)
        assert not res
        assert isinstance(res.error, error)
        assert monitor.adjustment_history(sid) == []

    def test_unknown_session(self, game):
        monitor, _ = game
        res = monitor.record_manual_adjustment("nope", "alice", CHIPS, "1", "dealer")
        assert isinstance(res.error, SessionNotFoundError)


class TestResolution:

    def test_resolve_records_audit_trail(self, game, clock):
        monitor, sid = game
        (warning,) = monitor.record_manual_adjustment(sid, "alice", CHIPS, "0.15", actor="dealer").unwrap()
        clock.advance(minutes=5)
        resolved = monitor.resolve_warning(warning.warning_id, "corrected", "applied redistribution", actor="floor").unwrap()
        assert resolved.status is WarningStatus.RESOLVED
        assert resolved.resolved_by == "floor"
        assert resolved.resolved_at == clock.now
        assert [a.action for a in resolved.audit_trail] == ["created", "resolved"]
        assert monitor.get_warning(warning.warning_id) == resolved
        assert monitor.active_warnings(sid) == []
        assert warning.is_open

    def test_already_resolved(self, game):
        monitor, sid = game
        (warning,) = monitor.record_manual_adjustment(sid, "alice", CHIPS, "0.15", actor="dealer").unwrap()
        monitor.resolve_warning(warning.warning_id, "ok", "checked").unwrap()
        again = monitor.resolve_warning(warning.warning_id, "ok", "checked")
        assert isinstance(again.error, PreconditionError)

    def test_unknown_warning(self, game):
        monitor, _ = game
        res = monitor.resolve_warning("warn-missing", "ok", "checked")
        assert isinstance(res.error, WarningNotFoundError)
        assert monitor.get_warning("warn-missing") is None

    def test_resolution_required(self, game):
        monitor, sid = game
        (warning,) = monitor.record_manual_adjustment(sid, "alice", CHIPS, "0.15", actor="dealer").unwrap()
        assert isinstance(monitor.resolve_warning(warning.warning_id, "", "x").error, InputValidationError)

    def test_metrics(self, game, clock):
        monitor, sid = game
        (minor,) = monitor.record_manual_adjustment(sid, "alice", CHIPS, "0.15", actor="dealer").unwrap()
        monitor.record_manual_adjustment(sid, "bob", CHIPS, "10", actor="dealer").unwrap()
        clock.advance(minutes=5)
        monitor.resolve_warning(minor.warning_id, "corrected", "recount").unwrap()

        metrics = monitor.get_metrics(sid)
        assert metrics["warnings"] == 2
        assert metrics["open"] == 1
        assert metrics["resolved"] == 1
        assert metrics["by_severity"] == {"minor": 1, "major": 0, "critical": 1}
        assert metrics["resolution_rate"] == 0.5
        assert metrics["mean_resolution_seconds"] == 300.0
        assert metrics["adjustments"] == 2
        assert monitor.get_metrics()["sessions"] == 1


class TestMonitoring:

    def test_start_and_stop_are_idempotent(self, game):
        monitor, sid = game
        assert monitor.monitoring_state(sid) is MonitorState.STOPPED
        assert monitor.start_monitoring(sid).unwrap() is MonitorState.MONITORING
        assert monitor.start_monitoring(sid).unwrap() is MonitorState.MONITORING
        assert len(monitor.samples(sid)) == 1
        assert monitor.get_metrics(sid)["monitoring"] == 1

        assert monitor.stop_monitoring(sid) is MonitorState.STOPPED
        assert monitor.stop_monitoring(sid) is MonitorState.STOPPED
        assert monitor.monitoring_state(sid) is MonitorState.STOPPED

    def test_start_on_missing_session_fails(self, game):
        monitor, _ = game
        res = monitor.start_monitoring("nope")
        assert isinstance(res.error, SessionNotFoundError)
        assert monitor.monitoring_state("nope") is MonitorState.STOPPED

    def test_sample_records_positions(self, game, clock):
        monitor, sid = game
        sample = monitor.sample(sid).unwrap()
        assert sample.taken_at == clock.now
        assert sample.discrepancy == 0
        assert sample.positions == {"alice": Decimal("50"), "bob": Decimal("-50")}

    def test_sampled_drift_warns_once(self, monitor_for):
        source, sid = SessionBuilder().player("solo", buy_in=100, chips="100.50").build()
        monitor = monitor_for(source)
        monitor.start_monitoring(sid).unwrap()
        monitor.sample(sid).unwrap()
        (warning,) = monitor.active_warnings(sid)
        assert warning.detection == "sampling"
        assert warning.severity is Severity.MINOR
        assert warning.balance_impact == Decimal("0.50")

    def test_sampling_failure_keeps_monitoring(self, two_player, monitor_for):
        inner, sid = two_player
        flaky = FlakySource(inner, failures=0)
        monitor = monitor_for(flaky)
        monitor.start_monitoring(sid).unwrap()

        flaky.failures = 1
        _fire(monitor, sid)
        metrics = monitor.get_metrics(sid)
        assert metrics["sampling_failures"] == 1
        assert monitor.monitoring_state(sid) is MonitorState.MONITORING

        _fire(monitor, sid)
        assert monitor.get_metrics(sid)["sampling_failures"] == 1
        assert len(monitor.samples(sid)) == 2

    def test_tick_after_stop_does_nothing(self, game):
        monitor, sid = game
        monitor.start_monitoring(sid).unwrap()
        pending = monitor._state(sid).generation
        monitor.stop_monitoring(sid)
        monitor._tick(sid, pending)
        assert len(monitor.samples(sid)) == 1

    def test_stale_tick_after_restart_keeps_one_timer(self, game):
        monitor, sid = game
        monitor.start_monitoring(sid).unwrap()
        lock = monitor._lock_for(sid)

        with lock:
            stale = monitor._state(sid).generation
            waiting = threading.Thread(target=monitor._tick, args=(sid, stale))
            waiting.start()
            monitor.stop_monitoring(sid)
            monitor.start_monitoring(sid).unwrap()
            current = monitor._state(sid).timer
        waiting.join(timeout=5)

        assert not waiting.is_alive()
        assert monitor._state(sid).timer is current
        assert len(monitor.samples(sid)) == 2
        live = [
            t for t in threading.enumerate()
            if isinstance(t, threading.Timer) and t.function == monitor._tick and not t.finished.is_set()
        ]
        assert live == [current]

        monitor.stop_monitoring(sid)
        assert current.finished.is_set()

    def test_shutdown_stops_every_session(self, two_player, monitor_for):
        source, sid = two_player
        SessionBuilder("other", source=source).player("carol", buy_in=50, chips=50)
        monitor = monitor_for(source)
        monitor.start_monitoring(sid).unwrap()
        monitor.start_monitoring("other").unwrap()
        monitor.shutdown()
        assert monitor.get_metrics()["monitoring"] == 0
