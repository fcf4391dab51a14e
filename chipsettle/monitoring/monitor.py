"""
chipsettle/monitoring/monitor.py

Balance-drift warnings for live sessions.

Per session:
    Stopped ──start_monitoring──▶ Monitoring ──stop_monitoring──▶ Stopped

While monitoring, a cancellable timer samples the bank and every player's
position each interval. Sampling failures are logged and retried on the next
tick; they never stop monitoring.

record_manual_adjustment() classifies one adjustment:

    BALANCE_DISCREPANCY   |delta| above minor/major/critical thresholds
    LARGE_ADJUSTMENT      |delta| above large_adjustment_threshold
    FREQUENT_ADJUSTMENTS  more than N adjustments to one player in the window
    LARGE_*_POSITION      standing positions outside the configured bounds

Every session has its own lock. Two sessions never wait on each other.
"""

import dataclasses
import logging
import threading
import uuid
from collections import deque
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from chipsettle.core.config import WarningConfig
from chipsettle.core.exceptions import (
    InputValidationError,
    PlayerNotFoundError,
    PreconditionError,
    WarningNotFoundError,
)
from chipsettle.core.models import Player, SessionSnapshot
from chipsettle.core.money import ZERO, fmt, from_cents, quantize, to_cents, to_decimal
from chipsettle.core.result import Result, capture
from chipsettle.core.time import Clock, utc_now
from chipsettle.monitoring.models import (
    AdjustmentType,
    AuditEntry,
    AutoCorrection,
    BalanceSample,
    ManualAdjustment,
    MonitoringState,
    MonitorState,
    PlayerCorrection,
    SettlementWarning,
    WarningCode,
    WarningStatus,
)
from chipsettle.positions.calculator import PositionCalculator
from chipsettle.validation.models import Severity

logger = logging.getLogger(__name__)

SEVERITY_MESSAGES = {
    Severity.CRITICAL: "Settlement cannot proceed until this is resolved.",
    Severity.MAJOR:    "Manual approval required before proceeding.",
    Severity.MINOR:    "Consider reviewing before finalizing settlement.",
}


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def classify(impact: Decimal, config: WarningConfig) -> Optional[Severity]:
    """Severity for a balance impact, or None when it is below every threshold."""
    if impact > config.critical_threshold:
        return Severity.CRITICAL
    if impact > config.major_threshold:
        return Severity.MAJOR
    if impact > config.minor_threshold:
        return Severity.MINOR
    return None


def suggested_actions(severity: Severity, impact: Decimal) -> List[str]:
    actions = [
        "Review recent transactions for accuracy",
        "Verify player chip counts manually",
        "Check for any voided or missing transactions",
    ]
    if severity is Severity.CRITICAL:
        actions.insert(0, "STOP - settlement blocked until resolved")
        actions.append("Contact players to verify balances")
    if impact > 50:
        actions.append("Consider a manual adjustment with a documented reason")
    return actions


def split_by_chips(amount: Decimal, players: List[Player]) -> Dict[str, Decimal]:
    """
    Split amount across players in proportion to their chips, exact to the cent.

    Largest-remainder: every player gets the floor of their share in cents,
    leftover cents go to the largest fractional parts (ties by player_id).
    Equal weights when nobody holds chips.
    """
    cents = to_cents(quantize(amount))
    ordered = sorted(players, key=lambda p: p.player_id)
    weights = [p.current_chips for p in ordered]
    if sum(weights) <= 0:
        weights = [Decimal(1)] * len(ordered)
    weight_total = sum(weights)

    floors, remainders = {}, []
    for player, weight in zip(ordered, weights):
        exact = Decimal(cents) * weight / weight_total
        floor = int(exact)
        floors[player.player_id] = floor
        remainders.append((exact - floor, player.player_id))

    leftover = cents - sum(floors.values())
    for _, pid in sorted(remainders, key=lambda r: (-r[0], r[1]))[:leftover]:
        floors[pid] += 1
    return {pid: from_cents(c) for pid, c in floors.items()}


class WarningMonitor:
    """
    Tracks adjustments and warnings per session.

    Usage:
        monitor = WarningMonitor(calculator, WarningConfig())
        monitor.start_monitoring("s1")
        warnings = monitor.record_manual_adjustment(
            "s1", "alice", AdjustmentType.CHIP_COUNT, "0.15", actor="dealer",
        ).unwrap()
        monitor.resolve_warning(warnings[0].warning_id, "recounted", "chips were miscounted")
    """

    def __init__(
        self,
        calculator: PositionCalculator,
        config:     Optional[WarningConfig] = None,
        clock:      Clock = utc_now,
    ) -> None:
        self.calculator = calculator
        self.config = config or WarningConfig()
        self.clock = clock
        self._states: Dict[str, MonitoringState] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._owners: Dict[str, str] = {}
        self._registry = threading.Lock()

    # ── Per-session state ────────────────────────────────────

    def _lock_for(self, session_id: str) -> threading.RLock:
        with self._registry:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.RLock()
                self._states[session_id] = MonitoringState(
                    session_id, samples=deque(maxlen=self.config.max_warning_history),
                )
            return lock

    def _state(self, session_id: str) -> MonitoringState:
        return self._states[session_id]

    def _snapshot(self, session_id: str) -> SessionSnapshot:
        return self.calculator.snapshot(session_id).unwrap()

    # ── Monitoring lifecycle ─────────────────────────────────

    def start_monitoring(self, session_id: str) -> Result[MonitorState]:
        return capture(self._start, session_id)

    def _start(self, session_id: str) -> MonitorState:
        lock = self._lock_for(session_id)
        with lock:
            state = self._state(session_id)
            if state.is_monitoring:
                return state.state
            self._take_sample(session_id, self._snapshot(session_id))
            state.state = MonitorState.MONITORING
            self._schedule(session_id)
        logger.info("Monitoring started for session %s", session_id)
        return MonitorState.MONITORING

    def stop_monitoring(self, session_id: str) -> MonitorState:
        lock = self._lock_for(session_id)
        with lock:
            state = self._state(session_id)
            if not state.is_monitoring:
                return state.state
            state.state = MonitorState.STOPPED
            state.generation += 1
            if state.timer is not None:
                state.timer.cancel()
                state.timer = None
        logger.info("Monitoring stopped for session %s", session_id)
        return MonitorState.STOPPED

    def monitoring_state(self, session_id: str) -> MonitorState:
        with self._lock_for(session_id):
            return self._state(session_id).state

    def shutdown(self) -> None:
        """Stop every monitored session."""
        with self._registry:
            sessions = list(self._states)
        for session_id in sessions:
            self.stop_monitoring(session_id)

    def _schedule(self, session_id: str) -> None:
        # Caller holds the session lock. One live timer per session: each
        # schedule bumps the generation, so a tick from an older chain is stale.
        state = self._state(session_id)
        if state.timer is not None:
            state.timer.cancel()
        state.generation += 1
        timer = threading.Timer(
            self.config.monitoring_interval_seconds, self._tick, args=(session_id, state.generation),
        )
        timer.daemon = True
        state.timer = timer
        timer.start()

    def _tick(self, session_id: str, generation: int) -> None:
        with self._lock_for(session_id):
            state = self._state(session_id)
            if not state.is_monitoring or generation != state.generation:
                return
            try:
                result = self.sample(session_id)
                if not result:
                    state.failures += 1
                    logger.warning("Sampling %s failed, retrying next cycle: %s", session_id, result.error)
            except Exception:
                state.failures += 1
                logger.exception("Sampling %s raised, retrying next cycle", session_id)
            finally:
                if state.is_monitoring:
                    self._schedule(session_id)

    # ── Sampling ─────────────────────────────────────────────

    def sample(self, session_id: str) -> Result[BalanceSample]:
        """Take one balance sample now. The timer calls this every interval."""
        def _run() -> BalanceSample:
            with self._lock_for(session_id):
                return self._take_sample(session_id, self._snapshot(session_id))
        return capture(_run)

    def _take_sample(self, session_id: str, snap: SessionSnapshot) -> BalanceSample:
        state = self._state(session_id)
        sample = BalanceSample(
            taken_at=        self.clock(),
            total_buy_ins=   snap.bank.total_buy_ins,
            total_cash_outs= snap.bank.total_cash_outs,
            chips_in_play=   snap.bank.chips_in_play,
            discrepancy=     snap.bank.discrepancy,
            player_count=    len(snap.players),
            positions=       {p.player_id: p.net_position for p in snap.positions},
        )
        state.samples.append(sample)

        drift = abs(snap.bank.discrepancy)
        severity = classify(drift, self.config)
        already = any(
            w.code is WarningCode.BALANCE_DISCREPANCY and w.detection == "sampling"
            for w in state.active_warnings()
        )
        if severity is not None and not already:
            self._store(state, [self._balance_warning(
                session_id, severity, drift, snap, self.config, detection="sampling",
            )])
        return sample

    def samples(self, session_id: str) -> List[BalanceSample]:
        with self._lock_for(session_id):
            return list(self._state(session_id).samples)

    # ── Manual adjustments ───────────────────────────────────

    def record_manual_adjustment(
        self,
        session_id:      str,
        player_id:       str,
        adjustment_type,
        delta,
        actor:           str,
        reason:          Optional[str] = None,
        config:          Optional[WarningConfig] = None,
    ) -> Result[List[SettlementWarning]]:
        return capture(
            self._record, session_id, player_id, adjustment_type, delta, actor, reason, config or self.config,
        )

    def _record(self, session_id, player_id, adjustment_type, delta, actor, reason, config) -> List[SettlementWarning]:
        try:
            kind = AdjustmentType(adjustment_type)
        except ValueError:
            raise InputValidationError(
                "Unknown adjustment type",
                {"adjustment_type": adjustment_type, "choices": ", ".join(t.value for t in AdjustmentType)},
            ) from None
        try:
            amount = to_decimal(delta)
        except (ValueError, TypeError, InvalidOperation) as exc:
            raise InputValidationError("Adjustment delta is not a number", {"delta": delta}) from exc
        if amount == ZERO:
            raise InputValidationError("Adjustment delta must be non-zero")
        if not actor:
            raise InputValidationError("Adjustment actor is required")

        with self._lock_for(session_id):
            snap = self._snapshot(session_id)
            if not any(p.player_id == player_id for p in snap.players):
                raise PlayerNotFoundError(
                    "Player not in session", {"session_id": session_id, "player_id": player_id},
                )
            state = self._state(session_id)
            adjustment = ManualAdjustment(
                adjustment_id=   _new_id("adj"),
                session_id=      session_id,
                player_id=       player_id,
                adjustment_type= kind,
                delta=           amount,
                actor=           actor,
                reason=          reason,
                recorded_at=     self.clock(),
            )
            state.adjustments.append(adjustment)

            warnings = self._adjustment_warnings(state, adjustment, snap, config)
            warnings += self._position_warnings(state, snap, config)
            self._store(state, warnings)
            self._trim(state, config)

        for w in warnings:
            level = logging.WARNING if w.severity is not Severity.MINOR else logging.INFO
            logger.log(level, "%s on %s: %s", w.code.value, session_id, w.message)
        return warnings

    def adjustment_history(self, session_id: str) -> List[ManualAdjustment]:
        with self._lock_for(session_id):
            return list(self._state(session_id).adjustments)

    def _adjustment_warnings(
        self,
        state:      MonitoringState,
        adjustment: ManualAdjustment,
        snap:       SessionSnapshot,
        config:     WarningConfig,
    ) -> List[SettlementWarning]:
        warnings = []
        impact = adjustment.balance_impact
        now = adjustment.recorded_at

        severity = classify(impact, config)
        if severity is not None:
            warnings.append(self._balance_warning(
                state.session_id, severity, impact, snap, config, adjustment=adjustment,
            ))

        if impact > config.large_adjustment_threshold:
            warnings.append(SettlementWarning(
                warning_id=        _new_id("warn"),
                session_id=        state.session_id,
                code=              WarningCode.LARGE_ADJUSTMENT,
                severity=          Severity.MAJOR,
                message=           f"Large manual adjustment: {fmt(impact)} ({adjustment.adjustment_type.value})",
                affected_players=  [adjustment.player_id],
                balance_impact=    impact,
                can_proceed=       True,
                requires_approval= impact > config.require_approval_threshold,
                suggested_actions= [
                    "Verify the adjustment with the players",
                    "Document the reason for this adjustment",
                ],
                detected_at=       now,
                adjustment_id=     adjustment.adjustment_id,
                audit_trail=       [AuditEntry(now, "created", "system", "large adjustment")],
            ))

        window_start = now - timedelta(minutes=config.frequent_window_minutes)
        recent = [
            a for a in state.adjustments
            if a.player_id == adjustment.player_id and a.recorded_at >= window_start
        ]
        if len(recent) > config.frequent_adjustment_count and not self._has_open(
            state, WarningCode.FREQUENT_ADJUSTMENTS, [adjustment.player_id],
        ):
            warnings.append(SettlementWarning(
                warning_id=        _new_id("warn"),
                session_id=        state.session_id,
                code=              WarningCode.FREQUENT_ADJUSTMENTS,
                severity=          Severity.MAJOR,
                message=           (
                    f"{len(recent)} adjustments to {adjustment.player_id} "
                    f"in the last {config.frequent_window_minutes} minutes"
                ),
                affected_players=  [adjustment.player_id],
                balance_impact=    sum((a.balance_impact for a in recent), ZERO),
                can_proceed=       True,
                requires_approval= False,
                suggested_actions= [
                    "Review recent adjustments for consistency",
                    "Verify game state with the players",
                ],
                detected_at=       now,
                adjustment_id=     adjustment.adjustment_id,
                audit_trail=       [AuditEntry(now, "created", "system", "frequent adjustments")],
            ))
        return warnings

    def _position_warnings(
        self,
        state:  MonitoringState,
        snap:   SessionSnapshot,
        config: WarningConfig,
    ) -> List[SettlementWarning]:
        warnings = []
        now = self.clock()
        for p in snap.positions:
            net = p.net_position
            if net < config.large_negative_position:
                code, severity, approval = WarningCode.LARGE_NEGATIVE_POSITION, Severity.MAJOR, True
                message = f"{p.name} has a large negative position: {fmt(net)}"
            elif net > config.large_positive_position:
                code, severity, approval = WarningCode.LARGE_POSITIVE_POSITION, Severity.MINOR, False
                message = f"{p.name} has a large positive position: {fmt(net)}"
            else:
                continue
            if self._has_open(state, code, [p.player_id]):
                continue
            warnings.append(SettlementWarning(
                warning_id=        _new_id("warn"),
                session_id=        state.session_id,
                code=              code,
                severity=          severity,
                message=           message,
                affected_players=  [p.player_id],
                balance_impact=    abs(net),
                can_proceed=       True,
                requires_approval= approval,
                suggested_actions= [
                    f"Verify {p.name}'s chip count",
                    "Check buy-in and cash-out history",
                ],
                detected_at=       now,
                detection=         "validation",
                audit_trail=       [AuditEntry(now, "created", "system", code.value.lower())],
            ))
        return warnings

    def _balance_warning(
        self,
        session_id: str,
        severity:   Severity,
        impact:     Decimal,
        snap:       SessionSnapshot,
        config:     WarningConfig,
        adjustment: Optional[ManualAdjustment] = None,
        detection:  str = "real_time",
    ) -> SettlementWarning:
        now = self.clock()
        correction = None
        if config.enable_auto_correction and impact <= config.auto_correct_threshold:
            correction = self._auto_correction(impact, snap, adjustment)
        return SettlementWarning(
            warning_id=        _new_id("warn"),
            session_id=        session_id,
            code=              WarningCode.BALANCE_DISCREPANCY,
            severity=          severity,
            message=           f"Balance discrepancy of {fmt(impact)}. {SEVERITY_MESSAGES[severity]}",
            affected_players=  [adjustment.player_id] if adjustment else [],
            balance_impact=    impact,
            can_proceed=       severity is not Severity.CRITICAL,
            requires_approval= severity is not Severity.MINOR or impact > config.require_approval_threshold,
            suggested_actions= suggested_actions(severity, impact),
            detected_at=       now,
            detection=         detection,
            adjustment_id=     adjustment.adjustment_id if adjustment else None,
            auto_correction=   correction,
            audit_trail=       [AuditEntry(now, "created", "system", f"{severity.value} balance discrepancy")],
        )

    @staticmethod
    def _auto_correction(
        impact:     Decimal,
        snap:       SessionSnapshot,
        adjustment: Optional[ManualAdjustment],
    ) -> Optional[AutoCorrection]:
        active = [p for p in snap.players if p.is_active]
        if not active:
            return None
        # Undo the direction of the adjustment: chips added are taken back.
        sign = -1 if adjustment is None or adjustment.delta > 0 else 1
        shares = split_by_chips(impact, active)
        corrections = [
            PlayerCorrection(
                player_id=       p.player_id,
                name=            p.name,
                original_chips=  p.current_chips,
                share=           shares[p.player_id],
                suggested_chips= p.current_chips + sign * shares[p.player_id],
            )
            for p in sorted(active, key=lambda p: p.player_id)
        ]
        return AutoCorrection(
            correction_id= _new_id("corr"),
            description=   f"Redistribute {fmt(impact)} across {len(corrections)} active player(s) by chip count",
            amount=        impact,
            corrections=   corrections,
            rollback=      [f"Set {c.name}'s chips back to {c.original_chips}" for c in corrections],
        )

    # ── Warning store ────────────────────────────────────────

    @staticmethod
    def _has_open(state: MonitoringState, code: WarningCode, players: List[str]) -> bool:
        key = (code, tuple(players))
        return any(w.dedup_key() == key for w in state.active_warnings())

    def _store(self, state: MonitoringState, warnings: List[SettlementWarning]) -> None:
        with self._registry:
            for w in warnings:
                state.warnings[w.warning_id] = w
                self._owners[w.warning_id] = state.session_id

    def _trim(self, state: MonitoringState, config: WarningConfig) -> None:
        """Drop resolved warnings past the history limit or retention window. Open ones always stay."""
        cutoff = self.clock() - timedelta(days=config.retention_days)
        resolved = sorted(
            (w for w in state.warnings.values() if not w.is_open),
            key=lambda w: w.detected_at,
        )
        excess = max(len(state.warnings) - config.max_warning_history, 0)
        drop = {w.warning_id for w in resolved[:excess]}
        drop |= {w.warning_id for w in resolved if w.detected_at < cutoff}
        with self._registry:
            for warning_id in drop:
                del state.warnings[warning_id]
                self._owners.pop(warning_id, None)
        state.adjustments[:] = [a for a in state.adjustments if a.recorded_at >= cutoff]

    def resolve_warning(
        self,
        warning_id: str,
        resolution: str,
        reason:     str,
        actor:      str = "system",
    ) -> Result[SettlementWarning]:
        return capture(self._resolve, warning_id, resolution, reason, actor)

    def _resolve(self, warning_id: str, resolution: str, reason: str, actor: str) -> SettlementWarning:
        if not resolution:
            raise InputValidationError("Resolution is required")
        with self._registry:
            session_id = self._owners.get(warning_id)
        if session_id is None:
            raise WarningNotFoundError("Unknown warning", {"warning_id": warning_id})

        with self._lock_for(session_id):
            state = self._state(session_id)
            warning = state.warnings.get(warning_id)
            if warning is None:
                raise WarningNotFoundError("Unknown warning", {"warning_id": warning_id})
            if not warning.is_open:
                raise PreconditionError("Warning is already resolved", {"warning_id": warning_id})
            now = self.clock()
            resolved = dataclasses.replace(
                warning,
                status=            WarningStatus.RESOLVED,
                resolution=        resolution,
                resolution_reason= reason,
                resolved_by=       actor,
                resolved_at=       now,
                audit_trail=       warning.audit_trail + [AuditEntry(now, "resolved", actor, f"{resolution}: {reason}")],
            )
            state.warnings[warning_id] = resolved

        logger.info("Warning %s on %s resolved by %s", warning_id, session_id, actor)
        return resolved

    # ── Queries ──────────────────────────────────────────────

    def active_warnings(self, session_id: str) -> List[SettlementWarning]:
        with self._lock_for(session_id):
            return self._state(session_id).active_warnings()

    def get_warning(self, warning_id: str) -> Optional[SettlementWarning]:
        with self._registry:
            session_id = self._owners.get(warning_id)
        if session_id is None:
            return None
        with self._lock_for(session_id):
            return self._state(session_id).warnings.get(warning_id)

    def can_settle(self, session_id: str) -> bool:
        """False while any open warning blocks settlement."""
        return not any(w.blocks_settlement for w in self.active_warnings(session_id))

    def get_metrics(self, session_id: Optional[str] = None) -> dict:
        with self._registry:
            sessions = [session_id] if session_id is not None else list(self._states)
        warnings: List[SettlementWarning] = []
        adjustments = samples = failures = monitoring = 0
        for sid in sessions:
            with self._lock_for(sid):
                state = self._state(sid)
                warnings += list(state.warnings.values())
                adjustments += len(state.adjustments)
                samples += len(state.samples)
                failures += state.failures
                monitoring += state.is_monitoring

        resolved = [w for w in warnings if not w.is_open]
        latencies = [(w.resolved_at - w.detected_at).total_seconds() for w in resolved]
        return {
            "sessions":                len(sessions),
            "monitoring":              monitoring,
            "warnings":                len(warnings),
            "open":                    len(warnings) - len(resolved),
            "resolved":                len(resolved),
            "by_severity":             {s.value: sum(1 for w in warnings if w.severity is s) for s in Severity},
            "resolution_rate":         len(resolved) / len(warnings) if warnings else 0.0,
            "mean_resolution_seconds": sum(latencies) / len(latencies) if latencies else None,
            "adjustments":             adjustments,
            "samples":                 samples,
            "sampling_failures":       failures,
        }
