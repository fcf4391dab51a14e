from chipsettle.positions.calculator import (
    BalanceVerifier,
    PositionCalculator,
    bank_balance_from,
    positions_from,
)
from chipsettle.positions.cashout import EarlyCashOutCalculator, EarlyCashOutResult

__all__ = [
    "BalanceVerifier",
    "PositionCalculator",
    "bank_balance_from",
    "positions_from",
    "EarlyCashOutCalculator",
    "EarlyCashOutResult",
]
