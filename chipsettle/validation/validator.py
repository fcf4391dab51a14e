"""
chipsettle/validation/validator.py

Six-step settlement audit.

    1. Mathematical Balance Validation      credits == debits, plan covers credits
    2. Player Position Validation           received − paid == recomputed net
    3. Precision Validation                 no sub-cent amounts, bounded rounding loss
    4. Real-time Validation                 plan built from the current session state
    5. Bank Balance Cross-validation        settlement fits the money the bank holds
    6. Validation Summary

Every step always runs and records its inputs and outputs, so a failed
audit shows every problem at once rather than the first one. Discrepancies
are reported, never corrected.
"""

import dataclasses
import logging
import threading
import time
from collections import OrderedDict
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from chipsettle.core.canonical import short_hash
from chipsettle.core.config import SettlementConfig
from chipsettle.core.models import (
    BankBalance,
    OptimizationResult,
    PlayerPosition,
    net_flows,
    plan_fingerprint,
    positions_fingerprint,
    precision_loss,
)
from chipsettle.core.money import ZERO, fmt, sub_cent_residue, total
from chipsettle.core.result import Result
from chipsettle.core.time import settle_timestamp
from chipsettle.positions.calculator import PositionCalculator
from chipsettle.validation.models import (
    ErrorCode,
    SettlementError,
    SettlementValidation,
    ValidationStep,
)

logger = logging.getLogger(__name__)

STEP_NAMES = (
    "Mathematical Balance Validation",
    "Player Position Validation",
    "Precision Validation",
    "Real-time Validation",
    "Bank Balance Cross-validation",
    "Validation Summary",
)

StepOutcome = Tuple[ValidationStep, List[SettlementError]]


def _bank_from_positions(positions: List[PlayerPosition], tolerance: Decimal) -> BankBalance:
    return BankBalance(
        total_buy_ins=   total(p.buy_ins for p in positions),
        total_cash_outs= total(p.cash_outs for p in positions),
        chips_in_play=   total(p.current_chips for p in positions if p.is_active),
        tolerance=       tolerance,
    )


class SettlementValidator:

    def __init__(
        self,
        calculator: Optional[PositionCalculator] = None,
        config:     Optional[SettlementConfig] = None,
    ) -> None:
        self.calculator = calculator
        self.config = config or (calculator.config if calculator else SettlementConfig())
        self._cache: "OrderedDict[str, SettlementValidation]" = OrderedDict()
        self._lock = threading.Lock()

    # ── Public API ───────────────────────────────────────────

    def validate(self, result: OptimizationResult) -> Result[SettlementValidation]:
        """
        Audit an optimization result.

        A stalled live read fails the whole call with a retryable
        SettlementTimeoutError; any other audit finding is reported inside
        the returned SettlementValidation.
        """
        started = time.perf_counter()
        live = self._live_state(result.session_id)
        if live is not None and not live[0] and live[0].retryable:
            logger.warning("Validation of %s timed out reading live state", result.session_id)
            return Result.failure(live[0].error)

        # Live state is part of the key: a session that moved must be re-audited.
        live_key = positions_fingerprint(live[0].value) if live is not None and live[0] else None
        fingerprint = short_hash([
            result.session_id, result.fingerprint, plan_fingerprint(result.optimized_payments), live_key,
        ])
        with self._lock:
            hit = self._cache.get(fingerprint)
            if hit is not None:
                self._cache.move_to_end(fingerprint)
                return Result.success(dataclasses.replace(hit, cached=True))

        steps: List[ValidationStep] = []
        errors: List[SettlementError] = []
        warnings: List[str] = []
        checks: List[Callable[[], StepOutcome]] = [
            lambda: self._check_balance(result),
            lambda: self._check_players(result),
            lambda: self._check_precision(result, warnings),
            lambda: self._check_live(result, live, warnings),
            lambda: self._check_bank(result, live),
        ]
        for check in checks:
            step, found = check()
            steps.append(step)
            errors.extend(found)

        elapsed = (time.perf_counter() - started) * 1000
        passed = sum(1 for s in steps if s.passed)
        steps.append(ValidationStep(
            step_number= 6,
            name=        STEP_NAMES[5],
            passed=      passed == len(steps),
            detail=      f"{passed}/{len(steps)} checks passed, {len(errors)} error(s)",
            inputs=      {"steps": len(steps)},
            outputs=     {"passed": passed, "failed": len(steps) - passed, "errors": len(errors),
                          "elapsed_ms": round(elapsed, 3)},
        ))

        validation = SettlementValidation(
            session_id=   result.session_id,
            is_valid=     all(s.passed for s in steps),
            errors=       errors,
            steps=        steps,
            warnings=     warnings,
            elapsed_ms=   elapsed,
            fingerprint=  fingerprint,
            validated_at= settle_timestamp(),
        )
        if not validation.is_valid:
            logger.warning(
                "Settlement %s failed validation: %s",
                result.session_id, ", ".join(sorted({e.code.value for e in errors})),
            )
        with self._lock:
            self._cache[fingerprint] = validation
            while len(self._cache) > self.config.cache_size:
                self._cache.popitem(last=False)
        return Result.success(validation)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    # ── Live state ───────────────────────────────────────────

    def _live_state(self, session_id: str):
        """(positions result, bank result) or None when there is no live source."""
        if self.calculator is None:
            return None
        snapshot = self.calculator.snapshot(session_id)
        if not snapshot:
            return snapshot, snapshot
        return snapshot.map(lambda s: s.positions), snapshot.map(lambda s: s.bank)

    # ── Steps ────────────────────────────────────────────────

    def _check_balance(self, result: OptimizationResult) -> StepOutcome:
        tol = self.config.tolerance
        credits = total(p.net_position for p in result.positions if p.net_position > 0)
        debits = total(-p.net_position for p in result.positions if p.net_position < 0)
        flows = net_flows(result.optimized_payments)
        received = total(v for v in flows.values() if v > 0)
        errors = []
        if abs(credits - debits) > tol:
            errors.append(SettlementError.of(
                ErrorCode.BALANCE_MISMATCH,
                f"Credits {fmt(credits)} do not match debits {fmt(debits)}",
                step=1,
            ))
        if abs(received - credits) > tol:
            errors.append(SettlementError.of(
                ErrorCode.BALANCE_MISMATCH,
                f"Plan settles {fmt(received)} but {fmt(credits)} is owed",
                step=1,
            ))
        step = ValidationStep(
            step_number= 1,
            name=        STEP_NAMES[0],
            passed=      not errors,
            detail=      f"ΣCredits {fmt(credits)} − ΣDebits {fmt(debits)} = {fmt(credits - debits)}",
            inputs=      {"total_credits": str(credits), "total_debits": str(debits)},
            outputs=     {"net_balance": str(credits - debits), "plan_settles": str(received)},
        )
        return step, errors

    def _check_players(self, result: OptimizationResult) -> StepOutcome:
        tol = self.config.tolerance
        flows = net_flows(result.optimized_payments)
        known = {p.player_id for p in result.positions}
        errors = []
        for p in result.positions:
            expected = (p.current_chips + p.cash_outs) - p.buy_ins
            got = flows.get(p.player_id, ZERO)
            if abs(got - expected) <= tol:
                continue
            if expected != 0 and got != 0 and (got > 0) != (expected > 0):
                message = f"{p.name} settles in the wrong direction ({fmt(got)} vs {fmt(expected)})"
            else:
                message = f"{p.name} settles {fmt(got)} but position is {fmt(expected)}"
            errors.append(SettlementError.of(ErrorCode.INVALID_PLAYER_STATE, message, [p.player_id], step=2))
        strangers = sorted(set(flows) - known)
        if strangers:
            errors.append(SettlementError.of(
                ErrorCode.INVALID_PLAYER_STATE,
                f"Payments reference unknown players: {', '.join(strangers)}",
                strangers, step=2,
            ))
        step = ValidationStep(
            step_number= 2,
            name=        STEP_NAMES[1],
            passed=      not errors,
            detail=      f"{len(result.positions) - len(errors)}/{len(result.positions)} players settle exactly",
            inputs=      {"players": len(result.positions), "payments": len(result.optimized_payments)},
            outputs=     {p: str(v) for p, v in sorted(flows.items())},
        )
        return step, errors

    def _check_precision(self, result: OptimizationResult, warnings: List[str]) -> StepOutcome:
        tol = self.config.tolerance
        errors = []
        fractional = [p for p in result.optimized_payments if sub_cent_residue(p.amount) > 0]
        if fractional:
            errors.append(SettlementError.of(
                ErrorCode.PRECISION_ERROR,
                f"{len(fractional)} payment(s) contain fractions of a cent",
                {x for p in fractional for x in (p.from_player, p.to_player)},
                step=3,
            ))
        loss = precision_loss(result.rounding_operations)
        if loss > tol:
            errors.append(SettlementError.of(
                ErrorCode.ROUNDING_ERROR,
                f"Cumulative rounding loss {loss} exceeds tolerance {tol}",
                step=3,
            ))
        elif loss > 0:
            warnings.append(f"minor rounding of {loss} applied to positions")
        step = ValidationStep(
            step_number= 3,
            name=        STEP_NAMES[2],
            passed=      not errors,
            detail=      f"{len(fractional)} fractional-cent payment(s), rounding loss {loss}",
            inputs=      {"payments": len(result.optimized_payments),
                          "rounding_operations": len(result.rounding_operations)},
            outputs=     {"fractional_cent_issues": len(fractional), "total_precision_loss": str(loss)},
        )
        return step, errors

    def _check_live(self, result: OptimizationResult, live, warnings: List[str]) -> StepOutcome:
        budget = self.config.processing_budget_ms
        if result.metrics.processing_time_ms > budget:
            warnings.append(
                f"optimization took {result.metrics.processing_time_ms:.0f}ms (budget {budget}ms)"
            )
        if live is None:
            step = ValidationStep(4, STEP_NAMES[3], True, "no live source attached; skipped")
            return step, []

        positions = live[0]
        if not positions:
            error = SettlementError.of(
                ErrorCode.INVALID_PLAYER_STATE,
                f"Live session state unavailable: {positions.error}",
                step=4,
            )
            return ValidationStep(4, STEP_NAMES[3], False, error.message), [error]

        current = {p.player_id: p.net_position for p in positions.value}
        planned = {p.player_id: p.net_position for p in result.positions}
        changed = sorted(
            pid for pid in set(current) | set(planned)
            if current.get(pid) != planned.get(pid)
        )
        errors = []
        if changed:
            errors.append(SettlementError.of(
                ErrorCode.INVALID_PLAYER_STATE,
                f"Positions changed since the plan was built: {', '.join(changed)}",
                changed, step=4,
            ))
        step = ValidationStep(
            step_number= 4,
            name=        STEP_NAMES[3],
            passed=      not errors,
            detail=      "plan matches live positions" if not errors else errors[0].message,
            inputs=      {"live_players": len(current), "planned_players": len(planned)},
            outputs=     {"changed_players": changed,
                          "processing_time_ms": round(result.metrics.processing_time_ms, 3)},
        )
        return step, errors

    def _check_bank(self, result: OptimizationResult, live) -> StepOutcome:
        if live is not None and live[1]:
            bank = live[1].value
        else:
            bank = _bank_from_positions(result.positions, self.config.tolerance)
        settled = result.metrics.total_settled
        errors = []
        if settled > bank.available + self.config.tolerance:
            errors.append(SettlementError.of(
                ErrorCode.BALANCE_MISMATCH,
                f"Settlement of {fmt(settled)} exceeds bank balance {fmt(bank.available)}",
                step=5,
            ))
        if not bank.is_balanced:
            errors.append(SettlementError.of(
                ErrorCode.BALANCE_MISMATCH,
                f"Bank out of balance by {fmt(bank.discrepancy)}",
                step=5,
            ))
        step = ValidationStep(
            step_number= 5,
            name=        STEP_NAMES[4],
            passed=      not errors,
            detail=      f"settlement {fmt(settled)} against available {fmt(bank.available)}",
            inputs=      {"total_settled": str(settled)},
            outputs=     bank.to_dict(),
        )
        return step, errors
