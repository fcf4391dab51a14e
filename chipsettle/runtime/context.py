"""
chipsettle/runtime/context.py

Wires one set of settlement components around a data source.

There is no global instance: each caller builds its own context and passes
it where it is needed. Configuration is fixed at construction; use
SettlementConfig.evolve() and a new context (or per-call config arguments)
to change thresholds.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from chipsettle.core.config import SettlementConfig, WarningConfig, load_config
from chipsettle.core.crypto import Ed25519KeyManager
from chipsettle.core.models import OptimizationResult
from chipsettle.core.result import Result
from chipsettle.core.time import Clock, utc_now
from chipsettle.monitoring.monitor import WarningMonitor
from chipsettle.optimizer.alternatives import AlternativeGenerator
from chipsettle.optimizer.optimizer import DebtOptimizer
from chipsettle.optimizer.strategies import Algorithm
from chipsettle.positions.calculator import BalanceVerifier, PositionCalculator
from chipsettle.positions.cashout import EarlyCashOutCalculator
from chipsettle.proof.exports import ProofExporter
from chipsettle.proof.generator import ProofGenerator
from chipsettle.proof.models import MathematicalProof
from chipsettle.sources.base import SessionDataSource
from chipsettle.validation.models import SettlementValidation
from chipsettle.validation.validator import SettlementValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementRun:
    """Everything produced by one optimize → validate → prove pass."""
    result:     OptimizationResult
    validation: SettlementValidation
    proof:      MathematicalProof

    @property
    def is_valid(self) -> bool:
        return self.result.is_valid and self.validation.is_valid and self.proof.is_valid


@dataclass
class SettlementContext:
    settlement_config: SettlementConfig
    warning_config:    WarningConfig
    calculator:        PositionCalculator
    verifier:          BalanceVerifier
    optimizer:         DebtOptimizer
    alternatives:      AlternativeGenerator
    validator:         SettlementValidator
    exporter:          ProofExporter
    proofs:            ProofGenerator
    monitor:           WarningMonitor
    cashout:           EarlyCashOutCalculator

    @classmethod
    def create(
        cls,
        source:            SessionDataSource,
        settlement_config: Optional[SettlementConfig] = None,
        warning_config:    Optional[WarningConfig] = None,
        key_manager:       Optional[Ed25519KeyManager] = None,
        clock:             Clock = utc_now,
    ) -> "SettlementContext":
        settlement_config = settlement_config or SettlementConfig()
        warning_config = warning_config or WarningConfig()
        calculator = PositionCalculator(source, settlement_config, clock=clock)
        optimizer = DebtOptimizer(calculator, settlement_config)
        exporter = ProofExporter(settlement_config, clock=clock)
        return cls(
            settlement_config= settlement_config,
            warning_config=    warning_config,
            calculator=        calculator,
            verifier=          BalanceVerifier(calculator),
            optimizer=         optimizer,
            alternatives=      AlternativeGenerator(optimizer),
            validator=         SettlementValidator(calculator, settlement_config),
            exporter=          exporter,
            proofs=            ProofGenerator(optimizer, key_manager, settlement_config, exporter, clock),
            monitor=           WarningMonitor(calculator, warning_config, clock),
            cashout=           EarlyCashOutCalculator(calculator),
        )

    @classmethod
    def from_config(
        cls,
        source:      SessionDataSource,
        config_file: Optional[Path] = None,
        key_path:    Optional[Path] = None,
        clock:       Clock = utc_now,
    ) -> "SettlementContext":
        """
        Build a context from an optional YAML config file and an optional
        signing key path. A key path that does not exist yet gets a fresh key.
        """
        if config_file is not None:
            settlement_config, warning_config = load_config(config_file)
        else:
            settlement_config, warning_config = SettlementConfig(), WarningConfig()
        key_manager = Ed25519KeyManager.load_or_create(Path(key_path)) if key_path else None
        return cls.create(source, settlement_config, warning_config, key_manager, clock)

    def settle(self, session_id: str, algorithm=Algorithm.GREEDY) -> Result[SettlementRun]:
        """Optimize, validate and prove one session. Stops at the first failure."""
        result = self.optimizer.optimize(session_id, algorithm)
        if not result:
            return Result.failure(result.error)
        validation = self.validator.validate(result.value)
        if not validation:
            return Result.failure(validation.error)
        proof = self.proofs.generate(result.value, validation.value)
        if not proof:
            return Result.failure(proof.error)
        run = SettlementRun(result.value, validation.value, proof.value)
        logger.info("Settled %s with %s: %s", session_id, result.value.algorithm_used,
                    "valid" if run.is_valid else "invalid")
        return Result.success(run)

    def close(self) -> None:
        self.monitor.shutdown()
        self.calculator.reader.close()

    def __repr__(self) -> str:
        return (
            f"SettlementContext("
            f"settlement_config=v{self.settlement_config.version}, "
            f"warning_config=v{self.warning_config.version})"
        )
