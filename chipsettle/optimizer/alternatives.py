"""
chipsettle/optimizer/alternatives.py

Side-by-side comparison of every strategy for one set of positions.

Each option is scored 1–10 on:
    simplicity         fewer payments relative to n·(n−1)
    fairness           low spread of payment amounts
    efficiency         reduction against the direct baseline
    user_friendliness  amounts that are neither tiny nor huge

The overall score is the weighted mean of the four. Scores are derived only
from the plan, never from timing, so a comparison is reproducible.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from chipsettle.core.config import SettlementConfig
from chipsettle.core.models import OptimizationResult, PlayerPosition
from chipsettle.core.result import Result, capture
from chipsettle.core.time import settle_timestamp
from chipsettle.optimizer.optimizer import DebtOptimizer
from chipsettle.optimizer.strategies import Algorithm

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = {
    "simplicity":        0.30,
    "fairness":          0.25,
    "efficiency":        0.30,
    "user_friendliness": 0.15,
}

_DESCRIPTIONS = {
    Algorithm.DIRECT:        ("Direct Settlement", "Every debtor pays every creditor a proportional share"),
    Algorithm.GREEDY:        ("Greedy Debt Reduction", "Largest debts are matched with largest credits first"),
    Algorithm.HUB:           ("Hub-Based", "All money flows through the biggest winner"),
    Algorithm.BALANCED_FLOW: ("Balanced Flow", "Incoming payments spread evenly across winners"),
    Algorithm.MINIMAL:       ("Minimal Transactions", "Fewest possible payments"),
}


@dataclass(frozen=True)
class Scores:
    simplicity:        float
    fairness:          float
    efficiency:        float
    user_friendliness: float
    overall:           float

    def to_dict(self) -> dict:
        return {
            "simplicity":        self.simplicity,
            "fairness":          self.fairness,
            "efficiency":        self.efficiency,
            "user_friendliness": self.user_friendliness,
            "overall":           self.overall,
        }


@dataclass(frozen=True)
class AlternativeSettlement:
    option_id:   str
    name:        str
    description: str
    algorithm:   Algorithm
    result:      OptimizationResult
    scores:      Scores
    pros:        List[str]
    cons:        List[str]

    @property
    def transaction_count(self) -> int:
        return len(self.result.optimized_payments)

    def to_dict(self) -> dict:
        return {
            "option_id":         self.option_id,
            "name":              self.name,
            "description":       self.description,
            "algorithm":         self.algorithm.value,
            "algorithm_used":    self.result.algorithm_used,
            "transaction_count": self.transaction_count,
            "total_settled":     str(self.result.metrics.total_settled),
            "reduction":         str(self.result.metrics.reduction_percentage),
            "is_valid":          self.result.is_valid,
            "scores":            self.scores.to_dict(),
            "pros":              list(self.pros),
            "cons":              list(self.cons),
            "payments":          [p.to_dict() for p in self.result.optimized_payments],
        }


@dataclass(frozen=True)
class Recommendation:
    option_id:                  str
    confidence:                 float
    reasoning:                  List[str]
    alternative_considerations: List[str]
    player_count:               int
    complexity_level:           str
    dispute_risk:               str

    def to_dict(self) -> dict:
        return {
            "option_id":                  self.option_id,
            "confidence":                 self.confidence,
            "reasoning":                  list(self.reasoning),
            "alternative_considerations": list(self.alternative_considerations),
            "player_count":               self.player_count,
            "complexity_level":           self.complexity_level,
            "dispute_risk":               self.dispute_risk,
        }


@dataclass(frozen=True)
class SettlementComparison:
    comparison_id:  str
    session_id:     str
    generated_at:   str
    alternatives:   List[AlternativeSettlement]
    recommendation: Recommendation
    matrix:         Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def recommended(self) -> AlternativeSettlement:
        return next(a for a in self.alternatives if a.option_id == self.recommendation.option_id)

    def to_dict(self) -> dict:
        counts = [a.transaction_count for a in self.alternatives]
        return {
            "comparison_id":  self.comparison_id,
            "session_id":     self.session_id,
            "generated_at":   self.generated_at,
            "alternatives":   [a.to_dict() for a in self.alternatives],
            "recommendation": self.recommendation.to_dict(),
            "matrix":         self.matrix,
            "summary": {
                "transaction_count_range": [min(counts), max(counts)] if counts else [0, 0],
                "average_score": round(
                    sum(a.scores.overall for a in self.alternatives) / len(self.alternatives), 2,
                ) if self.alternatives else 0.0,
                "options": len(self.alternatives),
            },
        }


# ─────────────────────────────────────────────────────────────
# Scoring
# ─────────────────────────────────────────────────────────────

def _clamp(x: float) -> float:
    return round(max(1.0, min(10.0, x)), 2)


def score(result: OptimizationResult, weights: Optional[Dict[str, float]] = None) -> Scores:
    weights = weights or DEFAULT_WEIGHTS
    payments = result.optimized_payments
    n = len(result.positions)
    amounts = [float(p.amount) for p in payments]

    most = n * (n - 1)
    simplicity = 10.0 if not most else 10 - (len(payments) / most) * 9

    if amounts:
        mean = sum(amounts) / len(amounts)
        variance = sum((a - mean) ** 2 for a in amounts) / len(amounts)
        fairness = 10 - (variance / (mean * mean)) * 2
        friendliness = 10 - abs(math.log10(mean)) * 2
        friendliness -= 1 if min(amounts) < 1.0 else 0
        friendliness -= 0.5 if max(amounts) > 100.0 else 0
    else:
        fairness = friendliness = 10.0

    efficiency = float(result.metrics.reduction_percentage) / 10
    if not result.is_valid:
        efficiency = 1.0

    parts = {
        "simplicity":        _clamp(simplicity),
        "fairness":          _clamp(fairness),
        "efficiency":        _clamp(efficiency),
        "user_friendliness": _clamp(friendliness),
    }
    overall = sum(parts[k] * weights[k] for k in parts) / sum(weights.values())
    return Scores(overall=round(overall, 2), **parts)


def pros_and_cons(algorithm: Algorithm, result: OptimizationResult):
    reduction = float(result.metrics.reduction_percentage)
    pros, cons = [], []
    if algorithm is Algorithm.DIRECT:
        pros += ["Easy to understand", "Each player pays every winner their share"]
        cons += ["Most payments of any option"]
    elif algorithm is Algorithm.GREEDY:
        pros += ["Fast calculation", "Reduces transaction count significantly" if reduction > 50 else "Some transaction reduction"]
        cons += ["Payment amounts can look arbitrary"]
    elif algorithm is Algorithm.HUB:
        pros += ["One person coordinates every payment", "Simple to explain"]
        cons += ["Hub player handles money that is not theirs", "Relies on the hub paying out"]
    elif algorithm is Algorithm.BALANCED_FLOW:
        pros += ["No winner has to chase many payers"]
        cons += ["May need more payments than greedy"]
    elif algorithm is Algorithm.MINIMAL:
        pros += ["Fewest payments possible"]
        if result.fell_back:
            cons += ["Too many players for exact search; settled with greedy"]
        cons += ["Slower for larger groups"]
    if reduction > 75:
        pros.append("Excellent optimization efficiency")
    if len(result.optimized_payments) <= 3:
        pros.append("Three payments or fewer")
    return pros, cons


def recommend(alternatives: List[AlternativeSettlement]) -> Recommendation:
    ranked = sorted(
        alternatives,
        key=lambda a: (-a.scores.overall, a.transaction_count, a.algorithm.value),
    )
    best = ranked[0]
    runner_up = ranked[1] if len(ranked) > 1 else None
    margin = best.scores.overall - (runner_up.scores.overall if runner_up else 0)
    confidence = round(min(1.0, 0.6 + margin / 10 + (0.1 if best.result.is_valid else -0.3)), 2)

    reasoning = [f"Highest overall score ({best.scores.overall})"]
    if best.scores.simplicity >= 8:
        reasoning.append("Simple to carry out")
    if best.scores.efficiency >= 5:
        reasoning.append(f"Cuts payments by {best.result.metrics.reduction_percentage}%")

    considerations = []
    if runner_up is not None:
        if runner_up.transaction_count < best.transaction_count:
            considerations.append(f"{runner_up.name} requires fewer transactions")
        if runner_up.scores.simplicity > best.scores.simplicity:
            considerations.append(f"{runner_up.name} may be easier to understand")

    count = best.transaction_count
    fairness = best.scores.fairness
    return Recommendation(
        option_id=                  best.option_id,
        confidence=                 max(0.0, confidence),
        reasoning=                  reasoning,
        alternative_considerations= considerations,
        player_count=               len(best.result.positions),
        complexity_level=           "low" if count <= 3 else "medium" if count <= 6 else "high",
        dispute_risk=               "low" if fairness >= 8 else "medium" if fairness >= 6 else "high",
    )


# ─────────────────────────────────────────────────────────────
# Generator
# ─────────────────────────────────────────────────────────────

class AlternativeGenerator:

    def __init__(self, optimizer: DebtOptimizer, weights: Optional[Dict[str, float]] = None) -> None:
        self.optimizer = optimizer
        self.weights = dict(weights or DEFAULT_WEIGHTS)

    def generate(self, session_id: str, config: Optional[SettlementConfig] = None) -> Result[SettlementComparison]:
        positions = self.optimizer.calculator.calculate_positions(session_id)
        if not positions:
            return Result.failure(positions.error)
        return self.generate_for_positions(session_id, positions.value, config)

    def generate_for_positions(
        self,
        session_id: str,
        positions:  List[PlayerPosition],
        config:     Optional[SettlementConfig] = None,
    ) -> Result[SettlementComparison]:
        return capture(self._generate, session_id, positions, config)

    def _generate(self, session_id, positions, config) -> SettlementComparison:
        alternatives = []
        for algorithm in Algorithm:
            result = self.optimizer.optimize_positions(session_id, positions, algorithm, config).unwrap()
            name, description = _DESCRIPTIONS[algorithm]
            pros, cons = pros_and_cons(algorithm, result)
            alternatives.append(AlternativeSettlement(
                option_id=   f"opt-{algorithm.value}",
                name=        name,
                description= description,
                algorithm=   algorithm,
                result=      result,
                scores=      score(result, self.weights),
                pros=        pros,
                cons=        cons,
            ))

        matrix = {
            metric: {a.option_id: getattr(a.scores, metric) for a in alternatives}
            for metric in ("simplicity", "fairness", "efficiency", "user_friendliness", "overall")
        }
        matrix["transaction_count"] = {a.option_id: a.transaction_count for a in alternatives}

        comparison = SettlementComparison(
            comparison_id=  f"cmp-{uuid.uuid4().hex[:12]}",
            session_id=     session_id,
            generated_at=   settle_timestamp(),
            alternatives=   alternatives,
            recommendation= recommend(alternatives),
            matrix=         matrix,
        )
        logger.info(
            "Compared %d options for %s; recommended %s",
            len(alternatives), session_id, comparison.recommendation.option_id,
        )
        return comparison
