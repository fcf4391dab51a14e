"""
chipsettle/proof/models.py

Mathematical proof data model.

A MathematicalProof is immutable once generated. Its checksum covers
content_dict(), which is everything except the checksum itself, the
signature and the rendered export formats. to_dict() / from_dict() are exact
inverses so a proof read back from a structured export re-verifies.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from chipsettle.core.exceptions import IntegrityError, ProofExpiredError
from chipsettle.core.models import (
    BalanceProof,
    Payment,
    PlayerPosition,
    RoundingOperation,
)


def _d(value) -> Decimal:
    return Decimal(str(value))


@dataclass(frozen=True)
class ProofStep:
    step_number: int
    operation:   str
    description: str
    formula:     str
    inputs:      Dict[str, str]
    result:      str
    verified:    bool
    tolerance:   str = "0.01"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_number": self.step_number,
            "operation":   self.operation,
            "description": self.description,
            "formula":     self.formula,
            "inputs":      dict(self.inputs),
            "result":      self.result,
            "verified":    self.verified,
            "tolerance":   self.tolerance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofStep":
        return cls(**data)


@dataclass(frozen=True)
class FractionalCentIssue:
    subject: str
    amount:  Decimal
    residue: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"subject": self.subject, "amount": str(self.amount), "residue": str(self.residue)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FractionalCentIssue":
        return cls(data["subject"], _d(data["amount"]), _d(data["residue"]))


@dataclass(frozen=True)
class PrecisionReport:
    rounding_operations:    List[RoundingOperation]
    fractional_cent_issues: List[FractionalCentIssue]
    total_precision_loss:   Decimal
    tolerance:              Decimal

    @property
    def is_within_tolerance(self) -> bool:
        return self.total_precision_loss <= self.tolerance and not self.fractional_cent_issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rounding_operations":    [r.to_dict() for r in self.rounding_operations],
            "fractional_cent_issues": [f.to_dict() for f in self.fractional_cent_issues],
            "total_precision_loss":   str(self.total_precision_loss),
            "tolerance":              str(self.tolerance),
            "is_within_tolerance":    self.is_within_tolerance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrecisionReport":
        return cls(
            rounding_operations=    [
                RoundingOperation(r["description"], _d(r["original"]), _d(r["rounded"]), r.get("kind", "position"))
                for r in data["rounding_operations"]
            ],
            fractional_cent_issues= [FractionalCentIssue.from_dict(f) for f in data["fractional_cent_issues"]],
            total_precision_loss=   _d(data["total_precision_loss"]),
            tolerance=              _d(data["tolerance"]),
        )


@dataclass(frozen=True)
class AlgorithmVerification:
    algorithm:       str
    algorithm_used:  str
    payment_count:   int
    total_settled:   Decimal
    settles_players: bool
    difference:      Decimal
    agrees:          bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm":       self.algorithm,
            "algorithm_used":  self.algorithm_used,
            "payment_count":   self.payment_count,
            "total_settled":   str(self.total_settled),
            "settles_players": self.settles_players,
            "difference":      str(self.difference),
            "agrees":          self.agrees,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlgorithmVerification":
        return cls(
            algorithm=       data["algorithm"],
            algorithm_used=  data["algorithm_used"],
            payment_count=   int(data["payment_count"]),
            total_settled=   _d(data["total_settled"]),
            settles_players= bool(data["settles_players"]),
            difference=      _d(data["difference"]),
            agrees=          bool(data["agrees"]),
        )


@dataclass(frozen=True)
class ProofSignature:
    settlement_id:     str
    proof_id:          str
    timestamp:         str
    outcome:           str
    checksum:          str
    signer_public_key: str
    value:             str

    def signing_dict(self) -> Dict[str, Any]:
        return {
            "settlement_id": self.settlement_id,
            "proof_id":      self.proof_id,
            "timestamp":     self.timestamp,
            "outcome":       self.outcome,
            "checksum":      self.checksum,
        }

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.signing_dict(), signer_public_key=self.signer_public_key, value=self.value)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofSignature":
        return cls(**data)


def _balance_from_dict(data: Dict[str, Any]) -> BalanceProof:
    return BalanceProof(
        total_debits=  _d(data["total_debits"]),
        total_credits= _d(data["total_credits"]),
        net_balance=   _d(data["net_balance"]),
        is_balanced=   bool(data["is_balanced"]),
        precision=     _d(data["precision"]),
        timestamp=     data["timestamp"],
    )


@dataclass(frozen=True)
class MathematicalProof:
    proof_id:                str
    settlement_id:           str
    session_id:              str
    algorithm:               str
    generated_at:            str
    positions:               List[PlayerPosition]
    payments:                List[Payment]
    direct_payment_count:    int
    calculation_steps:       List[ProofStep]
    balance_verification:    BalanceProof
    precision_report:        PrecisionReport
    algorithm_verifications: List[AlgorithmVerification]
    consensus:               bool
    discrepancies:           List[str]
    human_readable_summary:  str
    technical_details:       List[str]
    is_valid:                bool
    checksum:                str = ""
    signature:               Optional[ProofSignature] = None
    export_formats:          Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def outcome(self) -> str:
        return "valid" if self.is_valid else "invalid"

    @property
    def total_settled(self) -> Decimal:
        return self.balance_verification.total_credits

    def content_dict(self) -> Dict[str, Any]:
        """Everything the checksum covers."""
        return {
            "proof_id":                self.proof_id,
            "settlement_id":           self.settlement_id,
            "session_id":              self.session_id,
            "algorithm":               self.algorithm,
            "generated_at":            self.generated_at,
            "positions":               [p.to_dict() for p in self.positions],
            "payments":                [p.to_dict() for p in self.payments],
            "direct_payment_count":    self.direct_payment_count,
            "calculation_steps":       [s.to_dict() for s in self.calculation_steps],
            "balance_verification":    self.balance_verification.to_dict(),
            "precision_report":        self.precision_report.to_dict(),
            "algorithm_verifications": [a.to_dict() for a in self.algorithm_verifications],
            "consensus":               self.consensus,
            "discrepancies":           list(self.discrepancies),
            "human_readable_summary":  self.human_readable_summary,
            "technical_details":       list(self.technical_details),
            "is_valid":                self.is_valid,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.content_dict()
        data["checksum"] = self.checksum
        data["signature"] = self.signature.to_dict() if self.signature else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MathematicalProof":
        signature = data.get("signature")
        return cls(
            proof_id=                data["proof_id"],
            settlement_id=           data["settlement_id"],
            session_id=              data["session_id"],
            algorithm=               data["algorithm"],
            generated_at=            data["generated_at"],
            positions=               [PlayerPosition.from_dict(p) for p in data["positions"]],
            payments=                [Payment.from_dict(p) for p in data["payments"]],
            direct_payment_count=    int(data["direct_payment_count"]),
            calculation_steps=       [ProofStep.from_dict(s) for s in data["calculation_steps"]],
            balance_verification=    _balance_from_dict(data["balance_verification"]),
            precision_report=        PrecisionReport.from_dict(data["precision_report"]),
            algorithm_verifications= [AlgorithmVerification.from_dict(a) for a in data["algorithm_verifications"]],
            consensus=               bool(data["consensus"]),
            discrepancies=           list(data["discrepancies"]),
            human_readable_summary=  data["human_readable_summary"],
            technical_details=       list(data["technical_details"]),
            is_valid=                bool(data["is_valid"]),
            checksum=                data.get("checksum", ""),
            signature=               ProofSignature.from_dict(signature) if signature else None,
        )


@dataclass(frozen=True)
class ProofIntegrityResult:
    is_valid:             bool
    checksum_valid:       bool
    signature_valid:      bool
    mathematically_sound: bool
    balance_valid:        bool
    algorithm_consensus:  bool
    timestamp_valid:      bool
    verified_at:          str
    errors:               List[str] = field(default_factory=list)
    warnings:             List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.is_valid

    def as_error(self):
        """The IntegrityError this result stands for, or None when valid."""
        if self.is_valid:
            return None
        details = {"errors": "; ".join(self.errors)}
        only_expired = self.checksum_valid and self.signature_valid and self.mathematically_sound \
            and self.balance_valid and self.algorithm_consensus
        if only_expired:
            return ProofExpiredError("Proof is outside its validity window", details)
        return IntegrityError("Proof failed integrity verification", details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid":             self.is_valid,
            "checksum_valid":       self.checksum_valid,
            "signature_valid":      self.signature_valid,
            "mathematically_sound": self.mathematically_sound,
            "balance_valid":        self.balance_valid,
            "algorithm_consensus":  self.algorithm_consensus,
            "timestamp_valid":      self.timestamp_valid,
            "verified_at":          self.verified_at,
            "errors":               list(self.errors),
            "warnings":             list(self.warnings),
        }
