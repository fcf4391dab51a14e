"""
chipsettle/proof/generator.py

Builds signed mathematical proofs for optimization results.

A proof restates the settlement as six calculation steps, each with the
formula used, its inputs, the numeric result and whether it verified:

    1. Player Net Position Calculation   NetPosition = (CurrentChips + CashOuts) − BuyIns
    2. Settlement Payment Calculation    TotalPayments = Σ PaymentAmounts
    3. Mathematical Balance Verification NetBalance = ΣCredits − ΣDebits
    4. Player Settlement Verification    Settlement = Received − Paid
    5. Optimization Efficiency           Reduction = ((Direct − Optimized) / Direct) × 100
    6. Precision and Rounding            FractionalCentIssues = count(residue > 0)

It then reruns Direct, Greedy and Balanced Flow (plus the requested
algorithm) on the same positions; they must all settle every player and
agree on the money moved within 0.01.

checksum  = SHA-256(JCS(proof.content_dict()))
signature = Ed25519(JCS({settlement_id, proof_id, timestamp, outcome, checksum}))
"""

import dataclasses
import logging
import uuid
from typing import Optional

from chipsettle.core.canonical import canonical_hash, canonicalize
from chipsettle.core.config import SettlementConfig
from chipsettle.core.crypto import Ed25519KeyManager
from chipsettle.core.models import OptimizationResult
from chipsettle.core.result import Result, capture
from chipsettle.core.time import Clock, format_timestamp, utc_now
from chipsettle.optimizer.optimizer import DebtOptimizer
from chipsettle.proof.integrity import verify_proof
from chipsettle.proof.models import MathematicalProof, ProofIntegrityResult, ProofSignature
from chipsettle.proof.steps import (
    build_precision_report,
    build_steps,
    summarize,
    verify_algorithms,
)
from chipsettle.validation.models import SettlementValidation

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────
# ProofGenerator
# ─────────────────────────────────────────────────────────────

class ProofGenerator:
    """
    Generates and verifies proofs.

    Usage:
        gen = ProofGenerator(optimizer, key_manager=key)
        proof = gen.generate(result, validation).unwrap()
        assert gen.verify(proof).is_valid
    """

    def __init__(
        self,
        optimizer:   Optional[DebtOptimizer] = None,
        key_manager: Optional[Ed25519KeyManager] = None,
        config:      Optional[SettlementConfig] = None,
        exporter=    None,
        clock:       Clock = utc_now,
    ) -> None:
        self.config = config or (optimizer.config if optimizer else SettlementConfig())
        self.optimizer = optimizer or DebtOptimizer(config=self.config)
        if key_manager is None:
            logger.info("No signing key supplied; generating an ephemeral proof key")
            key_manager = Ed25519KeyManager.generate()
        self.key_manager = key_manager
        self.exporter = exporter
        self.clock = clock

    def generate(
        self,
        result:     OptimizationResult,
        validation: Optional[SettlementValidation] = None,
    ) -> Result[MathematicalProof]:
        return capture(self._generate, result, validation)

    def verify(self, proof: MathematicalProof) -> ProofIntegrityResult:
        return verify_proof(proof, self.config, optimizer=self.optimizer, clock=self.clock)

    def _generate(
        self,
        result:     OptimizationResult,
        validation: Optional[SettlementValidation],
    ) -> MathematicalProof:
        config = self.config
        positions = list(result.positions)
        payments = list(result.optimized_payments)

        precision = build_precision_report(positions, payments, result.rounding_operations, config.tolerance)
        steps = build_steps(positions, payments, len(result.direct_payments), precision, config.tolerance)
        verifications = verify_algorithms(self.optimizer, result.session_id, positions, result.algorithm_used, config)

        consensus = all(v.agrees for v in verifications)
        discrepancies = [
            f"{v.algorithm} differs by {v.difference}"
            + ("" if v.settles_players else " and leaves players unsettled")
            for v in verifications if not v.agrees
        ]
        discrepancies += [f"step {s.step_number} ({s.operation}) failed" for s in steps if not s.verified]
        if validation is not None:
            discrepancies += [f"validation: {e.code.value}: {e.message}" for e in validation.errors]

        is_valid = (
            result.is_valid
            and all(s.verified for s in steps)
            and consensus
            and (validation is None or validation.is_valid)
        )

        details = [
            f"algorithm requested: {result.algorithm}",
            f"algorithm used: {result.algorithm_used}",
            f"config version: {result.config_version}",
            f"result fingerprint: {result.fingerprint}",
            f"tolerance: {config.tolerance}",
        ]
        details += [f"note: {n}" for n in result.notes]
        details += [f"optimizer: {e}" for e in result.validation_errors]

        proof = MathematicalProof(
            proof_id=                f"proof-{uuid.uuid4().hex}",
            settlement_id=           f"stl-{result.session_id}-{result.fingerprint}",
            session_id=              result.session_id,
            algorithm=               result.algorithm_used,
            generated_at=            format_timestamp(self.clock()),
            positions=               positions,
            payments=                payments,
            direct_payment_count=    len(result.direct_payments),
            calculation_steps=       steps,
            balance_verification=    result.balance_proof,
            precision_report=        precision,
            algorithm_verifications= verifications,
            consensus=               consensus,
            discrepancies=           discrepancies,
            human_readable_summary=  summarize(positions, payments, is_valid),
            technical_details=       details,
            is_valid=                is_valid,
        )
        proof = self._seal(proof)
        if self.exporter is not None:
            proof = dataclasses.replace(proof, export_formats=self.exporter.render_all(proof))

        level = logging.INFO if is_valid else logging.WARNING
        logger.log(level, "Proof %s for %s: %s", proof.proof_id, result.session_id, proof.outcome)
        return proof

    def _seal(self, proof: MathematicalProof) -> MathematicalProof:
        checksum = canonical_hash(proof.content_dict())
        unsigned = ProofSignature(
            settlement_id=     proof.settlement_id,
            proof_id=          proof.proof_id,
            timestamp=         proof.generated_at,
            outcome=           proof.outcome,
            checksum=          checksum,
            signer_public_key= self.key_manager.public_key_hex,
            value=             "",
        )
        value = self.key_manager.sign(canonicalize(unsigned.signing_dict()))
        return dataclasses.replace(
            proof,
            checksum=  checksum,
            signature= dataclasses.replace(unsigned, value=value),
        )
