"""
tests/test_validator.py

The six-step settlement audit.
"""

import dataclasses
from decimal import Decimal

import pytest

from chipsettle.core.config import SettlementConfig
from chipsettle.core.exceptions import SettlementTimeoutError
from chipsettle.core.models import Payment, RoundingOperation
from chipsettle.optimizer.optimizer import DebtOptimizer
from chipsettle.validation.models import ErrorCode, Severity
from chipsettle.validation.validator import STEP_NAMES, SettlementValidator

from helpers.session_builder import SessionBuilder, StallingSource, positions


@pytest.fixture
def settled(two_player, calculator_for):
    """(source, sid, calculator, result) for Scenario A."""
    source, sid = two_player
    calc = calculator_for(source)
    result = DebtOptimizer(calc).optimize(sid).unwrap()
    return source, sid, calc, result


def _offline():
    return SettlementValidator(config=SettlementConfig())


def _with_payments(result, *payments):
    return dataclasses.replace(result, optimized_payments=list(payments))


class TestValidSettlement:

    def test_scenario_a_is_valid(self, settled):
        _, _, calc, result = settled
        validation = SettlementValidator(calc).validate(result).unwrap()
        assert validation.is_valid
        assert validation.errors == []
        assert [s.name for s in validation.steps] == list(STEP_NAMES)
        assert all(s.passed for s in validation.steps)

    def test_summary_counts_steps(self, settled):
        _, _, calc, result = settled
        summary = SettlementValidator(calc).validate(result).unwrap().step(6)
        assert summary.outputs["passed"] == 5
        assert summary.outputs["failed"] == 0
        assert summary.detail.startswith("5/5")

    def test_offline_validation_skips_live_step(self, optimizer):
        result = optimizer.optimize_positions("s1", positions(alice="80", bob="50", charlie="-80", diana="-50")).unwrap()
        validation = _offline().validate(result).unwrap()
        assert validation.is_valid
        assert "skipped" in validation.step(4).detail

    def test_repeat_validation_is_cached(self, settled):
        _, _, calc, result = settled
        validator = SettlementValidator(calc)
        first = validator.validate(result).unwrap()
        second = validator.validate(result).unwrap()
        assert not first.cached
        assert second.cached
        assert second.fingerprint == first.fingerprint
        validator.clear_cache()
        assert not validator.validate(result).unwrap().cached


class TestDiscrepancies:

    def test_short_plan_is_a_balance_mismatch(self, settled):
        _, _, _, result = settled
        short = _with_payments(result, Payment("bob", "Bob", "alice", "Alice", Decimal("40"), 1))
        validation = _offline().validate(short).unwrap()
        assert not validation.is_valid
        assert not validation.step(1).passed
        assert validation.errors_by_code(ErrorCode.BALANCE_MISMATCH)
        players = validation.errors_by_code(ErrorCode.INVALID_PLAYER_STATE)
        assert {p for e in players for p in e.affected_players} == {"alice", "bob"}

    def test_wrong_direction_is_named(self, settled):
        _, _, _, result = settled
        backwards = _with_payments(result, Payment("alice", "Alice", "bob", "Bob", Decimal("50"), 1))
        validation = _offline().validate(backwards).unwrap()
        messages = [e.message for e in validation.errors_by_code(ErrorCode.INVALID_PLAYER_STATE)]
        assert any("wrong direction" in m for m in messages)

    def test_unknown_payee(self, settled):
        _, _, _, result = settled
        stray = _with_payments(
            result,
            Payment("bob", "Bob", "alice", "Alice", Decimal("50"), 1),
            Payment("bob", "Bob", "zoe", "Zoe", Decimal("5"), 2),
        )
        validation = _offline().validate(stray).unwrap()
        assert any("zoe" in e.affected_players for e in validation.errors)

    def test_fractional_cent_payment_is_a_precision_error(self, settled):
        _, _, _, result = settled
        fractional = _with_payments(result, Payment("bob", "Bob", "alice", "Alice", Decimal("50.004"), 1))
        validation = _offline().validate(fractional).unwrap()
        (error,) = validation.errors
        assert error.code is ErrorCode.PRECISION_ERROR
        assert error.severity is Severity.MAJOR
        assert error.step == 3

    def test_rounding_loss_beyond_tolerance_is_critical(self, settled):
        _, _, _, result = settled
        lossy = dataclasses.replace(
            result, rounding_operations=[RoundingOperation("position x", Decimal("1.00"), Decimal("1.05"))],
        )
        validation = _offline().validate(lossy).unwrap()
        (error,) = validation.errors
        assert error.code is ErrorCode.ROUNDING_ERROR
        assert error.severity is Severity.CRITICAL

    def test_small_rounding_is_only_a_warning(self, settled):
        _, _, _, result = settled
        rounded = dataclasses.replace(
            result, rounding_operations=[RoundingOperation("position x", Decimal("1.005"), Decimal("1.00"))],
        )
        validation = _offline().validate(rounded).unwrap()
        assert validation.is_valid
        assert any("minor rounding" in w for w in validation.warnings)

    def test_share_roundings_do_not_count_as_loss(self, settled):
        _, _, _, result = settled
        shares = dataclasses.replace(
            result,
            rounding_operations=[RoundingOperation("direct share", Decimal("0.333333"), Decimal("0.33"), "share")] * 10,
        )
        assert _offline().validate(shares).unwrap().is_valid

    def test_slow_optimization_is_a_warning(self, settled):
        _, _, calc, result = settled
        slow = dataclasses.replace(result, metrics=dataclasses.replace(result.metrics, processing_time_ms=5000.0))
        validation = SettlementValidator(calc).validate(slow).unwrap()
        assert validation.is_valid
        assert any("budget" in w for w in validation.warnings)


class TestLiveState:

    def test_positions_moved_since_plan(self, settled):
        source, sid, calc, result = settled
        source.set_chips(sid, "alice", 160)
        source.set_chips(sid, "bob", 40)
        validation = SettlementValidator(calc).validate(result).unwrap()
        assert not validation.is_valid
        assert not validation.step(4).passed
        assert validation.step(4).outputs["changed_players"] == ["alice", "bob"]
        assert validation.step(5).passed

    def test_cache_does_not_hide_live_changes(self, settled):
        source, sid, calc, result = settled
        validator = SettlementValidator(calc)
        assert validator.validate(result).unwrap().is_valid
        source.set_chips(sid, "alice", 160)
        source.set_chips(sid, "bob", 40)
        again = validator.validate(result).unwrap()
        assert not again.cached
        assert not again.is_valid

    def test_settlement_beyond_bank_holdings(self, calculator_for):
        source, sid = (
            SessionBuilder()
            .player("alice", buy_in=100, cash_out=180)
            .player("bob",   buy_in=100, chips=20)
            .build()
        )
        calc = calculator_for(source)
        result = DebtOptimizer(calc).optimize(sid).unwrap()
        validation = SettlementValidator(calc).validate(result).unwrap()
        assert not validation.step(5).passed
        assert validation.step(5).outputs["available"] == "20"
        assert validation.errors_by_code(ErrorCode.BALANCE_MISMATCH)

    def test_stalled_live_read_is_retryable(self, two_player, calculator_for, optimizer):
        inner, sid = two_player
        result = optimizer.optimize_positions(sid, positions(alice="50", bob="-50")).unwrap()
        stalled = StallingSource(inner, stall_seconds=5)
        validator = SettlementValidator(calculator_for(stalled, SettlementConfig(read_timeout_ms=50)))
        try:
            res = validator.validate(result)
        finally:
            stalled.release()
        assert not res
        assert isinstance(res.error, SettlementTimeoutError)
        assert res.retryable

    def test_to_dict_is_json_ready(self, settled):
        _, _, calc, result = settled
        data = SettlementValidator(calc).validate(result).unwrap().to_dict()
        assert data["is_valid"] is True
        assert len(data["steps"]) == 6
        assert data["steps"][4]["outputs"]["is_balanced"] is True
