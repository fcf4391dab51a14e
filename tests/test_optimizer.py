"""
tests/test_optimizer.py

Settlement strategies, the DebtOptimizer pipeline and the alternatives
comparison.

Run:
    pytest tests/test_optimizer.py -v --tb=short
"""

from decimal import Decimal

import pytest

from chipsettle.core.config import SettlementConfig
from chipsettle.core.exceptions import (
    InputValidationError,
    OptimizationTimeoutError,
    SessionNotFoundError,
    UnbalancedSettlementError,
)
from chipsettle.core.models import net_flows, plan_total
from chipsettle.optimizer import strategies
from chipsettle.optimizer.alternatives import AlternativeGenerator, score
from chipsettle.optimizer.optimizer import DebtOptimizer, reduction_percentage
from chipsettle.optimizer.strategies import Algorithm, Balance, compute_plan

from helpers.session_builder import SessionBuilder, positions


def _pairs(payments):
    return [(p.from_player, p.to_player, p.amount) for p in payments]


def _balances(**cents):
    return [Balance(pid, c) for pid, c in sorted(cents.items())]


SCENARIO_B = dict(alice="80", bob="50", charlie="-80", diana="-50")

# Greedy splits both debtors; the exact search finds {a, c} and {b, d, e}.
SPLIT_GROUPS = dict(a="-7", b="-8", c="7", d="6", e="2")


# ─────────────────────────────────────────────────────────────
# Strategies
# ─────────────────────────────────────────────────────────────

class TestStrategies:

    def test_every_algorithm_has_a_strategy(self):
        assert set(strategies._STRATEGIES) == set(Algorithm)

    def test_parse_accepts_names_and_dashes(self):
        assert Algorithm.parse("Balanced-Flow") is Algorithm.BALANCED_FLOW
        assert Algorithm.parse(Algorithm.HUB) is Algorithm.HUB
        with pytest.raises(InputValidationError):
            Algorithm.parse("fastest")

    def test_direct_rows_and_columns_sum_exactly(self):
        balances = _balances(alice=8000, bob=5000, charlie=-8000, diana=-5000)
        plan = compute_plan(Algorithm.DIRECT, balances)
        paid, received = {}, {}
        for payer, payee, cents in plan.transfers:
            paid[payer] = paid.get(payer, 0) + cents
            received[payee] = received.get(payee, 0) + cents
        assert paid == {"charlie": 8000, "diana": 5000}
        assert received == {"alice": 8000, "bob": 5000}
        assert len(plan.transfers) == 4
        assert all(op.kind == "share" for op in plan.rounding_ops)

    def test_greedy_matches_largest_first(self):
        plan = compute_plan(Algorithm.GREEDY, _balances(alice=8000, bob=5000, charlie=-8000, diana=-5000))
        assert sorted(plan.transfers) == [("charlie", "alice", 8000), ("diana", "bob", 5000)]

    def test_hub_is_largest_creditor(self):
        plan = compute_plan(Algorithm.HUB, _balances(alice=8000, bob=5000, charlie=-8000, diana=-5000))
        assert sorted(plan.transfers) == [
            ("alice", "bob", 5000),
            ("charlie", "alice", 8000),
            ("diana", "alice", 5000),
        ]

    def test_hub_tie_goes_to_smallest_id(self):
        plan = compute_plan(Algorithm.HUB, _balances(zed=500, amy=500, kim=-1000))
        assert ("kim", "amy", 1000) in plan.transfers
        assert ("amy", "zed", 500) in plan.transfers

    def test_balanced_flow_spreads_incoming(self):
        plan = compute_plan(Algorithm.BALANCED_FLOW, _balances(a=300, b=300, x=-200, y=-200, z=-200))
        incoming = {}
        for _, payee, _ in plan.transfers:
            incoming[payee] = incoming.get(payee, 0) + 1
        assert max(incoming.values()) - min(incoming.values()) <= 1

    def test_minimal_finds_zero_sum_groups(self):
        balances = _balances(a=-700, b=-800, c=700, d=600, e=200)
        assert len(compute_plan(Algorithm.GREEDY, balances).transfers) == 4
        minimal = compute_plan(Algorithm.MINIMAL, balances)
        assert len(minimal.transfers) == 3
        assert ("a", "c", 700) in minimal.transfers

    def test_minimal_over_limit_uses_greedy(self):
        plan = compute_plan(Algorithm.MINIMAL, _balances(a=-700, b=-800, c=700, d=600, e=200), exact_search_limit=4)
        assert plan.algorithm_used is Algorithm.GREEDY
        assert "limited to 4 players" in plan.notes[0]

    def test_unbalanced_cents_rejected(self):
        with pytest.raises(InputValidationError):
            compute_plan(Algorithm.GREEDY, _balances(a=100, b=-99))

    def test_expired_deadline_raises(self):
        class Expired(strategies.Deadline):
            def check(self, where):
                raise OptimizationTimeoutError("late", {"stage": where})

        with pytest.raises(OptimizationTimeoutError):
            compute_plan(Algorithm.GREEDY, _balances(a=100, b=-100), Expired(1))

    @pytest.mark.parametrize("algorithm", list(Algorithm))
    def test_no_players_no_transfers(self, algorithm):
        assert compute_plan(algorithm, []).transfers == []
        assert compute_plan(algorithm, _balances(a=0, b=0)).transfers == []


# ─────────────────────────────────────────────────────────────
# DebtOptimizer
# ─────────────────────────────────────────────────────────────

class TestScenarios:

    def test_scenario_a_one_payment(self, two_player, calculator_for):
        source, sid = two_player
        result = DebtOptimizer(calculator_for(source)).optimize(sid).unwrap()
        assert _pairs(result.optimized_payments) == [("bob", "alice", Decimal("50"))]
        assert result.optimized_payments[0].from_name == "Bob"
        assert result.is_valid
        assert result.validation_errors == []
        assert result.metrics.total_settled == Decimal("50")

    def test_scenario_b_reduces_payments(self, four_player, calculator_for):
        source, sid = four_player
        result = DebtOptimizer(calculator_for(source)).optimize(sid, Algorithm.GREEDY).unwrap()
        assert len(result.direct_payments) == 4
        assert _pairs(result.optimized_payments) == [
            ("charlie", "alice", Decimal("80")),
            ("diana", "bob", Decimal("50")),
        ]
        assert [p.priority for p in result.optimized_payments] == [1, 2]
        assert result.metrics.reduction_percentage == Decimal("50.00")
        assert result.balance_proof.is_balanced
        assert abs(result.balance_proof.net_balance) <= Decimal("0.01")

    @pytest.mark.parametrize("algorithm,count", [
        (Algorithm.DIRECT, 4),
        (Algorithm.GREEDY, 2),
        (Algorithm.HUB, 3),
        (Algorithm.BALANCED_FLOW, 2),
        (Algorithm.MINIMAL, 2),
    ])
    def test_scenario_b_every_algorithm_settles(self, optimizer, algorithm, count):
        pos = positions(**SCENARIO_B)
        result = optimizer.optimize_positions("scenario-b", pos, algorithm).unwrap()
        assert len(result.optimized_payments) == count
        assert result.is_valid
        flows = net_flows(result.optimized_payments)
        for p in pos:
            assert flows[p.player_id] == p.net_position

    def test_scenario_c_single_player_is_unbalanced(self, calculator_for):
        source, sid = SessionBuilder("scenario-c").player("solo", buy_in=100, chips=200).build()
        res = DebtOptimizer(calculator_for(source)).optimize(sid)
        assert not res
        assert isinstance(res.error, UnbalancedSettlementError)
        assert res.error.details["imbalance"] == Decimal("100")


class TestDebtOptimizer:

    def test_missing_session(self, two_player, calculator_for):
        source, _ = two_player
        res = DebtOptimizer(calculator_for(source)).optimize("nope")
        assert isinstance(res.error, SessionNotFoundError)

    def test_unknown_algorithm_is_a_failure(self, optimizer):
        res = optimizer.optimize_positions("s1", positions(a="1", b="-1"), "fastest")
        assert isinstance(res.error, InputValidationError)
        assert optimizer.get_stats()["failures"] == 1

    @pytest.mark.parametrize("pos", [
        [],
        positions(alice="0"),
        positions(alice="0", bob="0"),
    ])
    def test_nothing_to_settle(self, optimizer, pos):
        result = optimizer.optimize_positions("s1", pos).unwrap()
        assert result.optimized_payments == []
        assert result.direct_payments == []
        assert result.metrics.reduction_percentage == Decimal("0.00")
        assert result.is_valid

    def test_imbalance_within_tolerance_is_accepted(self, optimizer):
        result = optimizer.optimize_positions("s1", positions(alice="50.005", bob="-50")).unwrap()
        assert _pairs(result.optimized_payments) == [("bob", "alice", Decimal("50.00"))]
        assert [op.kind for op in result.rounding_operations] == ["position"]
        assert result.is_valid

    def test_rounding_residual_absorbed_by_largest(self, optimizer):
        result = optimizer.optimize_positions(
            "s1", positions(alice="0.025", bob="-0.015", carol="-0.01"),
        ).unwrap()
        flows = net_flows(result.optimized_payments)
        assert flows["alice"] == Decimal("0.03")
        assert sum(flows.values()) == 0
        assert any("absorbed by alice" in n for n in result.notes)
        assert [op.kind for op in result.rounding_operations] == ["position", "position", "residual"]

    def test_totals_match_baseline(self, optimizer):
        result = optimizer.optimize_positions("s1", positions(**SPLIT_GROUPS), Algorithm.GREEDY).unwrap()
        assert plan_total(result.optimized_payments) == plan_total(result.direct_payments)
        assert len(result.optimized_payments) <= len(result.direct_payments)

    def test_minimal_beats_greedy(self, optimizer):
        greedy = optimizer.optimize_positions("s1", positions(**SPLIT_GROUPS), Algorithm.GREEDY).unwrap()
        minimal = optimizer.optimize_positions("s1", positions(**SPLIT_GROUPS), Algorithm.MINIMAL).unwrap()
        assert len(greedy.optimized_payments) == 4
        assert len(minimal.optimized_payments) == 3
        assert minimal.algorithm_used == "minimal"

    def test_minimal_limit_falls_back_to_greedy(self, optimizer):
        cfg = SettlementConfig(exact_search_max_players=3)
        result = optimizer.optimize_positions("s1", positions(**SCENARIO_B), Algorithm.MINIMAL, cfg).unwrap()
        assert result.algorithm == "minimal"
        assert result.algorithm_used == "greedy"
        assert result.fell_back
        assert any("minimal search limited" in n for n in result.notes)
        assert result.is_valid

    def test_timeout_falls_back_to_direct(self, optimizer, monkeypatch):
        def stalls(balances, deadline):
            raise OptimizationTimeoutError("late", {"stage": "greedy"})

        monkeypatch.setitem(strategies._STRATEGIES, Algorithm.GREEDY, stalls)
        result = optimizer.optimize_positions("s1", positions(**SCENARIO_B), Algorithm.GREEDY).unwrap()
        assert result.algorithm_used == "direct"
        assert len(result.optimized_payments) == len(result.direct_payments)
        assert any("fell back to direct" in e for e in result.validation_errors)
        assert optimizer.get_stats()["fallbacks"] == 1

    def test_timeout_result_is_not_cached(self, optimizer, monkeypatch):
        original = strategies._STRATEGIES[Algorithm.GREEDY]
        calls = []

        def stalls_once(balances, deadline):
            calls.append(1)
            if len(calls) == 1:
                raise OptimizationTimeoutError("late", {"stage": "greedy"})
            return original(balances, deadline)

        monkeypatch.setitem(strategies._STRATEGIES, Algorithm.GREEDY, stalls_once)
        pos = positions(**SCENARIO_B)
        first = optimizer.optimize_positions("s1", pos, Algorithm.GREEDY).unwrap()
        assert first.algorithm_used == "direct"

        retry = optimizer.optimize_positions("s1", pos, Algorithm.GREEDY).unwrap()
        assert len(calls) == 2
        assert retry.algorithm_used == "greedy"
        assert len(retry.optimized_payments) == 2
        assert retry.validation_errors == []
        assert optimizer.optimize_positions("s1", pos, Algorithm.GREEDY).unwrap() is retry

    def test_heuristic_worse_than_baseline_uses_baseline(self, optimizer):
        # Many small debts make the proportional baseline sparse.
        nets = dict(a="-0.07", b="-0.08", c="0.07", d="0.06", e="0.02")
        nets.update({f"x{i}": "-0.10" for i in range(10)})
        nets.update({f"y{i}": "0.10" for i in range(10)})
        result = optimizer.optimize_positions("s1", positions(**nets), Algorithm.GREEDY).unwrap()
        assert len(result.optimized_payments) <= len(result.direct_payments)
        assert result.is_valid

    def test_deterministic(self, optimizer):
        first = optimizer.optimize_positions("s1", positions(**SPLIT_GROUPS)).unwrap()
        optimizer.clear_cache()
        second = optimizer.optimize_positions("s1", positions(**SPLIT_GROUPS)).unwrap()
        assert first is not second
        assert [p.to_dict() for p in first.optimized_payments] == [p.to_dict() for p in second.optimized_payments]
        assert first.fingerprint == second.fingerprint

    def test_cache_keyed_on_config_version(self, optimizer):
        pos = positions(**SCENARIO_B)
        first = optimizer.optimize_positions("s1", pos).unwrap()
        assert optimizer.optimize_positions("s1", pos).unwrap() is first
        evolved = optimizer.config.evolve(minimum_payment="0.01")
        third = optimizer.optimize_positions("s1", pos, config=evolved).unwrap()
        assert third is not first
        assert third.config_version == 2
        stats = optimizer.get_stats()
        assert stats["requests"] == 3
        assert stats["cache_hits"] == 1

    def test_cache_keyed_on_config_values(self, optimizer):
        pos = positions(**SCENARIO_B)
        lenient = optimizer.optimize_positions("s1", pos).unwrap()
        strict = SettlementConfig(minimum_payment=Decimal("100"))
        assert strict.version == optimizer.config.version

        result = optimizer.optimize_positions("s1", pos, config=strict).unwrap()
        assert lenient.is_valid
        assert result is not lenient
        assert not result.is_valid
        assert any("below minimum 100.00" in e for e in result.validation_errors)

    def test_config_fingerprint(self):
        assert SettlementConfig().fingerprint == SettlementConfig().fingerprint
        assert SettlementConfig().fingerprint != SettlementConfig(tolerance=Decimal("0.02")).fingerprint

    def test_requires_calculator_for_session_reads(self, optimizer):
        with pytest.raises(RuntimeError):
            optimizer.optimize("s1")


def test_reduction_percentage():
    assert reduction_percentage(0, 0) == Decimal("0.00")
    assert reduction_percentage(4, 2) == Decimal("50.00")
    assert reduction_percentage(3, 1) == Decimal("66.67")


# ─────────────────────────────────────────────────────────────
# Alternatives
# ─────────────────────────────────────────────────────────────

class TestAlternatives:

    def test_every_strategy_is_compared(self, optimizer):
        comparison = AlternativeGenerator(optimizer).generate_for_positions(
            "scenario-b", positions(**SCENARIO_B),
        ).unwrap()
        assert {a.algorithm for a in comparison.alternatives} == set(Algorithm)
        assert comparison.recommended.result.is_valid
        assert comparison.matrix["transaction_count"]["opt-direct"] == 4
        for alt in comparison.alternatives:
            assert 1.0 <= alt.scores.overall <= 10.0
            assert alt.pros

    def test_recommendation_prefers_fewer_payments(self, optimizer):
        comparison = AlternativeGenerator(optimizer).generate_for_positions(
            "scenario-b", positions(**SCENARIO_B),
        ).unwrap()
        assert comparison.recommended.transaction_count == 2
        assert 0.0 <= comparison.recommendation.confidence <= 1.0
        assert comparison.recommendation.complexity_level == "low"

    def test_scores_ignore_timing(self, optimizer):
        result = optimizer.optimize_positions("s1", positions(**SCENARIO_B)).unwrap()
        assert score(result) == score(result)

    def test_generate_reads_session(self, four_player, calculator_for):
        source, sid = four_player
        comparison = AlternativeGenerator(DebtOptimizer(calculator_for(source))).generate(sid).unwrap()
        data = comparison.to_dict()
        assert data["session_id"] == sid
        assert data["summary"]["options"] == len(Algorithm)
        assert data["summary"]["transaction_count_range"] == [2, 4]

    def test_unbalanced_session_fails(self, calculator_for):
        source, sid = SessionBuilder().player("solo", buy_in=100, chips=200).build()
        res = AlternativeGenerator(DebtOptimizer(calculator_for(source))).generate(sid)
        assert isinstance(res.error, UnbalancedSettlementError)
