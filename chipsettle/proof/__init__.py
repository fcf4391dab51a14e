from chipsettle.proof.exports import (
    FORMATS,
    ExportResult,
    ProofExporter,
    parse_structured,
    reverify_structured,
)
from chipsettle.proof.generator import ProofGenerator
from chipsettle.proof.integrity import verify_proof
from chipsettle.proof.models import (
    AlgorithmVerification,
    FractionalCentIssue,
    MathematicalProof,
    PrecisionReport,
    ProofIntegrityResult,
    ProofSignature,
    ProofStep,
)

__all__ = [
    "FORMATS",
    "ExportResult",
    "ProofExporter",
    "parse_structured",
    "reverify_structured",
    "ProofGenerator",
    "verify_proof",
    "AlgorithmVerification",
    "FractionalCentIssue",
    "MathematicalProof",
    "PrecisionReport",
    "ProofIntegrityResult",
    "ProofSignature",
    "ProofStep",
]
