"""
chipsettle/proof/integrity.py

Independent re-verification of a MathematicalProof.

Checks, all of which must pass:
    checksum             SHA-256(JCS(content)) matches the stored checksum
    signature            Ed25519 over the signing block, bound to this proof
    mathematically_sound the six steps rebuilt from the proof's own data
                         reproduce the stored results and all verify
    balance              credits == debits and every player settles exactly
    algorithm consensus  strategies rerun now still agree
    timestamp            not in the future, not older than the retention window

Failures are reported, never repaired.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from chipsettle.core.canonical import canonical_hash, canonicalize
from chipsettle.core.config import SettlementConfig
from chipsettle.core.crypto import Ed25519KeyManager
from chipsettle.core.models import net_flows
from chipsettle.core.money import ZERO, total
from chipsettle.core.time import Clock, format_timestamp, parse_timestamp, utc_now
from chipsettle.optimizer.optimizer import DebtOptimizer
from chipsettle.proof.models import MathematicalProof, ProofIntegrityResult
from chipsettle.proof.steps import build_precision_report, build_steps, verify_algorithms

logger = logging.getLogger(__name__)

CLOCK_SKEW = timedelta(minutes=1)


def _check_signature(proof: MathematicalProof, checksum: str, errors: List[str]) -> bool:
    sig = proof.signature
    if sig is None:
        errors.append("proof is unsigned")
        return False
    bound = (
        sig.proof_id == proof.proof_id
        and sig.settlement_id == proof.settlement_id
        and sig.timestamp == proof.generated_at
        and sig.outcome == proof.outcome
        and sig.checksum == checksum
    )
    if not bound:
        errors.append("signature block does not match proof content")
        return False
    if not Ed25519KeyManager.verify_detached(canonicalize(sig.signing_dict()), sig.value, sig.signer_public_key):
        errors.append("signature does not verify")
        return False
    return True


def verify_proof(
    proof:     MathematicalProof,
    config:    Optional[SettlementConfig] = None,
    optimizer: Optional[DebtOptimizer] = None,
    clock:     Clock = utc_now,
) -> ProofIntegrityResult:
    config = config or SettlementConfig()
    optimizer = optimizer or DebtOptimizer(config=config)
    tol = config.tolerance
    errors: List[str] = []
    warnings: List[str] = []

    recomputed = canonical_hash(proof.content_dict())
    checksum_valid = recomputed == proof.checksum
    if not checksum_valid:
        errors.append("checksum mismatch: proof content was modified")

    signature_valid = _check_signature(proof, recomputed, errors)

    precision = build_precision_report(
        proof.positions, proof.payments, proof.precision_report.rounding_operations, tol,
    )
    steps = build_steps(proof.positions, proof.payments, proof.direct_payment_count, precision, tol)
    stored = {s.step_number: s for s in proof.calculation_steps}
    sound = len(stored) == len(steps)
    for step in steps:
        original = stored.get(step.step_number)
        if original is None or original.result != step.result or original.verified != step.verified:
            errors.append(f"step {step.step_number} does not reproduce")
            sound = False
        elif not step.verified:
            errors.append(f"step {step.step_number} ({step.operation}) is not verified")
            sound = False

    credits = total(p.net_position for p in proof.positions if p.net_position > 0)
    debits = total(-p.net_position for p in proof.positions if p.net_position < 0)
    flows = net_flows(proof.payments)
    balance_valid = abs(credits - debits) <= tol and all(
        abs(flows.get(p.player_id, ZERO) - p.net_position) <= tol for p in proof.positions
    )
    if not balance_valid:
        errors.append("payments do not balance the recorded positions")
    if credits != proof.balance_verification.total_credits or debits != proof.balance_verification.total_debits:
        errors.append("recorded balance totals do not match positions")
        balance_valid = False

    reruns = verify_algorithms(optimizer, proof.session_id, proof.positions, proof.algorithm, config)
    consensus = all(v.agrees for v in reruns)
    if not consensus:
        errors.append("algorithms no longer agree on this settlement")

    now = clock()
    try:
        generated = parse_timestamp(proof.generated_at)
    except ValueError:
        errors.append(f"unreadable timestamp {proof.generated_at!r}")
        timestamp_valid = False
    else:
        age = now - generated
        timestamp_valid = True
        if age < -CLOCK_SKEW:
            errors.append("proof timestamp is in the future")
            timestamp_valid = False
        elif age > timedelta(days=config.proof_retention_days):
            errors.append(f"proof expired: older than {config.proof_retention_days} days")
            timestamp_valid = False
        elif age > timedelta(days=config.proof_retention_days - 1):
            warnings.append("proof expires within a day")

    if not proof.is_valid:
        warnings.append("proof records its settlement as not verified")

    is_valid = all((checksum_valid, signature_valid, sound, balance_valid, consensus, timestamp_valid))
    if not is_valid:
        logger.warning("Proof %s failed verification: %s", proof.proof_id, "; ".join(errors))
    return ProofIntegrityResult(
        is_valid=             is_valid,
        checksum_valid=       checksum_valid,
        signature_valid=      signature_valid,
        mathematically_sound= sound,
        balance_valid=        balance_valid,
        algorithm_consensus=  consensus,
        timestamp_valid=      timestamp_valid,
        verified_at=          format_timestamp(now),
        errors=               errors,
        warnings=             warnings,
    )
