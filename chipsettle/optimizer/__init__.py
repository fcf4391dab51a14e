from chipsettle.optimizer.alternatives import AlternativeGenerator, SettlementComparison
from chipsettle.optimizer.optimizer import DebtOptimizer, reduction_percentage
from chipsettle.optimizer.strategies import Algorithm, Balance, compute_plan

__all__ = [
    "AlternativeGenerator",
    "SettlementComparison",
    "DebtOptimizer",
    "reduction_percentage",
    "Algorithm",
    "Balance",
    "compute_plan",
]
