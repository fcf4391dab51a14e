"""
chipsettle/__init__.py

chipsettle: settlement for pooled-stake game sessions.

Given every player's buy-ins, cash-outs and current chips, chipsettle works
out who pays whom with as few payments as it can, audits the plan to the
cent, and seals it in a signed, re-verifiable proof. A warning monitor
watches live sessions for manual corrections that let the books drift.

    context = SettlementContext.create(source)
    run = context.settle("friday-game").unwrap()
    print(context.exporter.export(run.proof, "compact").unwrap().text())
"""

__version__ = "0.3.0"

from chipsettle.core.config import SettlementConfig, WarningConfig, load_config
from chipsettle.core.crypto import Ed25519KeyManager
from chipsettle.core.exceptions import (
    ChipSettleError,
    ConsistencyError,
    InputValidationError,
    IntegrityError,
    SettlementTimeoutError,
    UnbalancedSettlementError,
)
from chipsettle.core.models import OptimizationResult, Payment, PlayerPosition
from chipsettle.core.result import Result
from chipsettle.monitoring.models import AdjustmentType
from chipsettle.monitoring.monitor import WarningMonitor
from chipsettle.optimizer.optimizer import DebtOptimizer
from chipsettle.optimizer.strategies import Algorithm
from chipsettle.positions.calculator import BalanceVerifier, PositionCalculator
from chipsettle.proof.exports import ProofExporter
from chipsettle.proof.generator import ProofGenerator
from chipsettle.runtime.context import SettlementContext
from chipsettle.sources.memory import InMemorySource
from chipsettle.sources.snapshot import JsonSnapshotSource
from chipsettle.validation.validator import SettlementValidator

__all__ = [
    # Pipeline
    "SettlementContext",
    "PositionCalculator",
    "BalanceVerifier",
    "DebtOptimizer",
    "SettlementValidator",
    "ProofGenerator",
    "ProofExporter",
    "WarningMonitor",
    # Data
    "AdjustmentType",
    "Algorithm",
    "OptimizationResult",
    "Payment",
    "PlayerPosition",
    "Result",
    "InMemorySource",
    "JsonSnapshotSource",
    # Config and keys
    "SettlementConfig",
    "WarningConfig",
    "load_config",
    "Ed25519KeyManager",
    # Errors
    "ChipSettleError",
    "ConsistencyError",
    "InputValidationError",
    "IntegrityError",
    "SettlementTimeoutError",
    "UnbalancedSettlementError",
]
