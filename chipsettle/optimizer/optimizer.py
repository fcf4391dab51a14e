"""
chipsettle/optimizer/optimizer.py

DebtOptimizer: positions in, payment plan out.

Pipeline per request:
    1. Σ net positions must be zero within tolerance, else
       UnbalancedSettlementError. Never corrected.
    2. Positions are rounded to whole cents. Every rounding is logged; a
       residual cent left by rounding is absorbed by the largest position.
    3. The requested strategy runs under the optimization time budget. On
       timeout the DIRECT plan is returned and the fallback is recorded in
       validation_errors.
    4. The DIRECT plan is always computed as the baseline. A plan with more
       payments than the baseline is replaced by it (noted).
    5. Conservation checks: every player's received − paid equals their
       position, and the optimized plan never has more payments than the
       baseline.

Results are cached per (session, algorithm, config fingerprint, positions).
A result produced by the timeout fallback is never cached, so the next
request runs the strategy again.
"""

import logging
import threading
import time
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from chipsettle.core.canonical import short_hash
from chipsettle.core.config import SettlementConfig
from chipsettle.core.exceptions import (
    OptimizationTimeoutError,
    UnbalancedSettlementError,
)
from chipsettle.core.models import (
    BalanceProof,
    OptimizationMetrics,
    OptimizationResult,
    Payment,
    PlayerPosition,
    RoundingOperation,
    assign_priorities,
    net_flows,
    plan_fingerprint,
    plan_total,
    positions_fingerprint,
    positions_sum,
)
from chipsettle.core.money import ZERO, fmt, from_cents, quantize, total
from chipsettle.core.result import Result, capture
from chipsettle.core.time import settle_timestamp
from chipsettle.optimizer.strategies import (
    NON_RELAYING,
    Algorithm,
    Balance,
    Deadline,
    Plan,
    Transfer,
    compute_plan,
)
from chipsettle.positions.calculator import PositionCalculator

logger = logging.getLogger(__name__)


def reduction_percentage(direct_count: int, optimized_count: int) -> Decimal:
    """((direct − optimized) / direct) × 100, 0 when there is nothing to reduce."""
    if direct_count == 0:
        return Decimal("0.00")
    return quantize(Decimal(direct_count - optimized_count) * 100 / Decimal(direct_count))


def to_balances(
    positions: List[PlayerPosition],
    config:    SettlementConfig,
) -> Tuple[List[Balance], List[RoundingOperation], List[str]]:
    """
    Round each net position to cents with config.rounding_mode. If rounding
    leaves the cents out of balance, the largest position (ties: smallest
    id) absorbs the residual.
    """
    ops: List[RoundingOperation] = []
    notes: List[str] = []
    cents: Dict[str, int] = {}
    for p in positions:
        exact = p.net_position
        rounded = quantize(exact, config.decimal_places, config.rounding_mode)
        if rounded != exact:
            ops.append(RoundingOperation(f"position {p.player_id}", exact, rounded))
        cents[p.player_id] = int(rounded * 100)

    residual = sum(cents.values())
    if residual and cents:
        absorber = min(cents, key=lambda pid: (-abs(cents[pid]), pid))
        before = from_cents(cents[absorber])
        cents[absorber] -= residual
        ops.append(RoundingOperation(
            f"residual absorbed by {absorber}", before, from_cents(cents[absorber]), kind="residual",
        ))
        notes.append(f"rounding residual {fmt(from_cents(residual))} absorbed by {absorber}")
        logger.info("Rounding residual of %d cent(s) absorbed by %s", residual, absorber)

    return [Balance(pid, c) for pid, c in sorted(cents.items())], ops, notes


def to_payments(transfers: List[Transfer], names: Dict[str, str]) -> List[Payment]:
    return assign_priorities(
        Payment(
            from_player= payer,
            from_name=   names.get(payer, payer),
            to_player=   payee,
            to_name=     names.get(payee, payee),
            amount=      from_cents(cents),
        )
        for payer, payee, cents in transfers
    )


def build_balance_proof(
    positions: List[PlayerPosition],
    payments:  List[Payment],
    tolerance: Decimal,
) -> BalanceProof:
    """
    credits = Σ positive positions, debits = Σ |negative positions|.
    Balanced when they agree within tolerance and every player's
    received − paid reproduces their position.
    """
    credits = total(p.net_position for p in positions if p.net_position > 0)
    debits = total(-p.net_position for p in positions if p.net_position < 0)
    net = credits - debits
    flows = net_flows(payments)
    settled = all(
        abs(flows.get(p.player_id, ZERO) - p.net_position) <= tolerance
        for p in positions
    )
    return BalanceProof(
        total_debits=  debits,
        total_credits= credits,
        net_balance=   net,
        is_balanced=   abs(net) <= tolerance and settled,
        precision=     tolerance,
        timestamp=     settle_timestamp(),
    )


class DebtOptimizer:
    """
    Computes optimized and baseline payment plans for a session.

    Usage:
        optimizer = DebtOptimizer(calculator)
        res = optimizer.optimize("s1", Algorithm.GREEDY)
        if res:
            for payment in res.value.optimized_payments: ...
    """

    def __init__(
        self,
        calculator: Optional[PositionCalculator] = None,
        config:     Optional[SettlementConfig] = None,
    ) -> None:
        self.calculator = calculator
        self.config = config or (calculator.config if calculator else SettlementConfig())
        self._cache: "OrderedDict[tuple, OptimizationResult]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"requests": 0, "cache_hits": 0, "fallbacks": 0, "failures": 0, "recomputes": 0}

    # ── Public API ───────────────────────────────────────────

    def optimize(
        self,
        session_id: str,
        algorithm:  Algorithm = Algorithm.GREEDY,
        config:     Optional[SettlementConfig] = None,
    ) -> Result[OptimizationResult]:
        if self.calculator is None:
            raise RuntimeError("DebtOptimizer.optimize() needs a PositionCalculator")
        positions = self.calculator.calculate_positions(session_id)
        if not positions:
            self._count("failures")
            return Result.failure(positions.error)
        return self.optimize_positions(session_id, positions.value, algorithm, config)

    def optimize_positions(
        self,
        session_id: str,
        positions:  List[PlayerPosition],
        algorithm:  Algorithm = Algorithm.GREEDY,
        config:     Optional[SettlementConfig] = None,
    ) -> Result[OptimizationResult]:
        """Same as optimize() for callers that already hold positions."""
        config = config or self.config
        result = capture(self._optimize, session_id, list(positions), algorithm, config)
        if not result:
            self._count("failures")
            logger.warning("Optimization of %s failed: %s", session_id, result.error)
        return result

    def recompute(
        self,
        session_id: str,
        positions:  List[PlayerPosition],
        algorithm:  Algorithm = Algorithm.GREEDY,
        config:     Optional[SettlementConfig] = None,
    ) -> Result[OptimizationResult]:
        """Run the full pipeline again, bypassing the cache in both directions."""
        config = config or self.config
        self._count("recomputes")
        return capture(
            lambda: self._build(session_id, list(positions), Algorithm.parse(algorithm), config)[0]
        )

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_stats(self) -> dict:
        with self._lock:
            return dict(self._stats, cache_size=len(self._cache))

    # ── Internals ────────────────────────────────────────────

    def _count(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def _optimize(
        self,
        session_id: str,
        positions:  List[PlayerPosition],
        algorithm,
        config:     SettlementConfig,
    ) -> OptimizationResult:
        algorithm = Algorithm.parse(algorithm)
        key = (session_id, algorithm, config.fingerprint, positions_fingerprint(positions))
        with self._lock:
            self._stats["requests"] += 1
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                self._stats["cache_hits"] += 1
                return cached

        result, timed_out = self._build(session_id, positions, algorithm, config)
        if timed_out:
            return result

        with self._lock:
            self._cache[key] = result
            while len(self._cache) > config.cache_size:
                self._cache.popitem(last=False)
        return result

    def _build(
        self,
        session_id: str,
        positions:  List[PlayerPosition],
        algorithm:  Algorithm,
        config:     SettlementConfig,
    ) -> Tuple[OptimizationResult, bool]:
        """The result, and whether the requested strategy timed out."""
        started = time.perf_counter()

        imbalance = positions_sum(positions)
        if abs(imbalance) > config.tolerance:
            raise UnbalancedSettlementError(
                f"Positions do not sum to zero (off by {fmt(imbalance)})",
                {"session_id": session_id, "imbalance": imbalance, "tolerance": config.tolerance},
            )

        balances, rounding_ops, notes = to_balances(positions, config)
        validation_errors: List[str] = []

        try:
            plan = compute_plan(
                algorithm,
                balances,
                Deadline(config.optimization_timeout_ms),
                config.exact_search_max_players,
            )
        except OptimizationTimeoutError as exc:
            self._count("fallbacks")
            logger.warning("%s timed out for %s; falling back to direct", algorithm.value, session_id)
            validation_errors.append(
                f"{algorithm.value} exceeded {config.optimization_timeout_ms}ms; "
                f"fell back to direct settlement ({exc.details.get('stage')})"
            )
            plan = None
        timed_out = plan is None

        baseline = compute_plan(Algorithm.DIRECT, balances)
        if plan is None:
            plan = Plan(algorithm_used=Algorithm.DIRECT, transfers=baseline.transfers)
        notes.extend(plan.notes)
        if len(plan.transfers) > len(baseline.transfers):
            # Sparse baselines (many sub-cent shares) can beat a heuristic.
            notes.append(
                f"{plan.algorithm_used.value} needed {len(plan.transfers)} payments, "
                f"more than the {len(baseline.transfers)} of direct settlement; using direct"
            )
            logger.info("%s worse than baseline for %s; using direct", plan.algorithm_used.value, session_id)
            plan = Plan(algorithm_used=Algorithm.DIRECT, transfers=baseline.transfers)
        rounding_ops.extend(baseline.rounding_ops)

        names = {p.player_id: p.name for p in positions}
        optimized = to_payments(plan.transfers, names)
        direct = to_payments(baseline.transfers, names)

        integrity = self._integrity_errors(positions, optimized, direct, plan.algorithm_used, config)
        proof = build_balance_proof(positions, optimized, config.tolerance)
        metrics = OptimizationMetrics(
            original_count=       len(direct),
            optimized_count=      len(optimized),
            reduction_percentage= reduction_percentage(len(direct), len(optimized)),
            total_settled=        proof.total_credits,
            processing_time_ms=   (time.perf_counter() - started) * 1000,
        )

        result = OptimizationResult(
            session_id=          session_id,
            algorithm=           algorithm.value,
            algorithm_used=      plan.algorithm_used.value,
            positions=           positions,
            optimized_payments=  optimized,
            direct_payments=     direct,
            metrics=             metrics,
            is_valid=            not integrity and proof.is_balanced,
            validation_errors=   validation_errors + integrity,
            balance_proof=       proof,
            fingerprint=         short_hash([
                positions_fingerprint(positions),
                plan.algorithm_used.value,
                plan_fingerprint(optimized),
            ]),
            config_version=      config.version,
            notes=               notes,
            rounding_operations= rounding_ops,
        )
        logger.info(
            "Optimized %s with %s: %d -> %d payments (%s%%)",
            session_id, result.algorithm_used, metrics.original_count,
            metrics.optimized_count, metrics.reduction_percentage,
        )
        return result, timed_out

    @staticmethod
    def _integrity_errors(
        positions: List[PlayerPosition],
        optimized: List[Payment],
        direct:    List[Payment],
        used:      Algorithm,
        config:    SettlementConfig,
    ) -> List[str]:
        errors = []
        flows = net_flows(optimized)
        for p in positions:
            got = flows.get(p.player_id, ZERO)
            if abs(got - p.net_position) > config.tolerance:
                errors.append(
                    f"{p.player_id} settles {fmt(got)} but position is {fmt(p.net_position)}"
                )
        if used in NON_RELAYING and plan_total(optimized) != plan_total(direct):
            errors.append(
                f"plan total {fmt(plan_total(optimized))} differs from baseline {fmt(plan_total(direct))}"
            )
        if len(optimized) > len(direct):
            errors.append(f"{len(optimized)} payments exceeds baseline of {len(direct)}")
        small = [p for p in optimized if p.amount < config.minimum_payment]
        if small:
            errors.append(f"{len(small)} payment(s) below minimum {fmt(config.minimum_payment)}")
        return errors
