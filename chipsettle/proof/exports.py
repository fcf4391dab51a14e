"""
chipsettle/proof/exports.py

Renders a proof into its four export formats.

    structured  JSON-ready dict with the full proof and re-checkable assertions
    narrative   long-form plain text for people
    compact     short, width-bounded text for a chat message
    tabular     CSV with positions / settlements / steps / summary / audit sections

A structured export can be read back with parse_structured(); the result is
the same proof (checksum included), so it re-verifies anywhere.
"""

import csv
import hashlib
import io
import json
import logging
import textwrap
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Union

from chipsettle.core.canonical import canonical_hash
from chipsettle.core.config import SettlementConfig
from chipsettle.core.exceptions import InputValidationError
from chipsettle.core.models import net_flows, plan_total
from chipsettle.core.money import ZERO, fmt, total
from chipsettle.core.result import Result, capture
from chipsettle.core.time import Clock, format_timestamp, utc_now
from chipsettle.proof.models import MathematicalProof

logger = logging.getLogger(__name__)

STRUCTURED = "structured"
NARRATIVE  = "narrative"
COMPACT    = "compact"
TABULAR    = "tabular"
FORMATS    = (STRUCTURED, NARRATIVE, COMPACT, TABULAR)

DOCUMENT_TYPE    = "chipsettle-proof"
DOCUMENT_VERSION = 1

REQUIRED_ASSERTIONS = ("net_balance", "total_payments", "player_settlement", "checksum")


@dataclass(frozen=True)
class ExportResult:
    export_id:     str
    proof_id:      str
    format:        str
    content:       Union[str, Dict[str, Any]]
    size:          int
    checksum:      str
    generated_at:  str
    processing_ms: float

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, indent=2, ensure_ascii=False)

    def metadata(self) -> Dict[str, Any]:
        return {
            "export_id":     self.export_id,
            "proof_id":      self.proof_id,
            "format":        self.format,
            "size":          self.size,
            "checksum":      self.checksum,
            "generated_at":  self.generated_at,
            "processing_ms": round(self.processing_ms, 3),
        }


# ─────────────────────────────────────────────────────────────
# Structured
# ─────────────────────────────────────────────────────────────

def _assertions(proof: MathematicalProof) -> List[Dict[str, Any]]:
    bv = proof.balance_verification
    return [
        {
            "name":      "net_balance",
            "formula":   "NetBalance = ΣCredits − ΣDebits",
            "expected":  str(bv.net_balance),
            "tolerance": str(bv.precision),
        },
        {
            "name":     "total_payments",
            "formula":  "TotalPayments = Σ PaymentAmounts",
            "expected": str(plan_total(proof.payments)),
        },
        {
            "name":     "player_settlement",
            "formula":  "Received − Paid = NetPosition",
            "expected": {p.player_id: str(p.net_position) for p in proof.positions},
        },
        {
            "name":     "checksum",
            "formula":  "SHA-256(JCS(content))",
            "expected": proof.checksum,
        },
    ]


def render_structured(proof: MathematicalProof) -> Dict[str, Any]:
    return {
        "type":       DOCUMENT_TYPE,
        "version":    DOCUMENT_VERSION,
        "proof":      proof.to_dict(),
        "assertions": _assertions(proof),
    }


def parse_structured(document: Union[str, bytes, Dict[str, Any]]) -> MathematicalProof:
    """Inverse of render_structured. Raises InputValidationError on bad input."""
    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except json.JSONDecodeError as exc:
            raise InputValidationError("Structured export is not valid JSON", {"reason": exc}) from exc
    if not isinstance(document, dict) or document.get("type") != DOCUMENT_TYPE:
        raise InputValidationError("Not a chipsettle proof export")
    if document.get("version") != DOCUMENT_VERSION:
        raise InputValidationError("Unsupported proof export version", {"version": document.get("version")})
    try:
        return MathematicalProof.from_dict(document["proof"])
    except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
        raise InputValidationError("Malformed proof in export", {"reason": exc}) from exc


def reverify_structured(document: Union[str, bytes, Dict[str, Any]]) -> Dict[str, bool]:
    """
    Re-run the embedded assertions against the exported data alone. Needs no
    access to the original session.

    Every name in REQUIRED_ASSERTIONS is always reported; one that is
    missing from the document counts as failed. A name that appears more
    than once passes only if every copy passes.
    """
    proof = parse_structured(document)
    if isinstance(document, (str, bytes)):
        document = json.loads(document)
    flows = net_flows(proof.payments)
    credits = total(p.net_position for p in proof.positions if p.net_position > 0)
    debits = total(-p.net_position for p in proof.positions if p.net_position < 0)
    tol = proof.balance_verification.precision

    def check(name, expected) -> bool:
        if name == "net_balance":
            return str(credits - debits) == expected and abs(credits - debits) <= tol
        if name == "total_payments":
            return str(plan_total(proof.payments)) == expected
        if name == "player_settlement":
            return (
                isinstance(expected, dict)
                and set(expected) == {p.player_id for p in proof.positions}
                and all(
                    str(p.net_position) == expected[p.player_id]
                    and abs(flows.get(p.player_id, ZERO) - p.net_position) <= tol
                    for p in proof.positions
                )
            )
        if name == "checksum":
            return canonical_hash(proof.content_dict()) == expected == proof.checksum
        return False

    embedded = document.get("assertions")
    if not isinstance(embedded, list):
        embedded = []
    outcomes: Dict[str, bool] = {}
    for assertion in embedded:
        if not isinstance(assertion, dict):
            continue
        name = str(assertion.get("name"))
        outcomes[name] = outcomes.get(name, True) and check(name, assertion.get("expected"))
    for name in REQUIRED_ASSERTIONS:
        outcomes.setdefault(name, False)
    return outcomes


# ─────────────────────────────────────────────────────────────
# Text renderings
# ─────────────────────────────────────────────────────────────

def render_narrative(proof: MathematicalProof) -> str:
    bv = proof.balance_verification
    lines = [
        "SETTLEMENT PROOF",
        "=" * 60,
        f"Proof:       {proof.proof_id}",
        f"Settlement:  {proof.settlement_id}",
        f"Session:     {proof.session_id}",
        f"Generated:   {proof.generated_at}",
        f"Algorithm:   {proof.algorithm}",
        f"Outcome:     {proof.outcome.upper()}",
        "",
        textwrap.fill(proof.human_readable_summary, width=60),
        "",
        "PLAYER POSITIONS",
        "-" * 60,
    ]
    for p in proof.positions:
        lines.append(
            f"  {p.name:<16} buy-ins {fmt(p.buy_ins):>10}  cash-outs {fmt(p.cash_outs):>10}"
            f"  chips {fmt(p.current_chips):>10}  net {fmt(p.net_position):>10}"
        )
    lines += ["", "PAYMENTS", "-" * 60]
    if not proof.payments:
        lines.append("  No payments needed. Everyone is square.")
    for p in proof.payments:
        lines.append(f"  {p.priority:>2}. {p.from_name} pays {p.to_name} {fmt(p.amount)}")
    lines += ["", "CALCULATION STEPS", "-" * 60]
    for s in proof.calculation_steps:
        mark = "verified" if s.verified else "FAILED"
        lines.append(f"  Step {s.step_number}: {s.operation} [{mark}]")
        lines.append(f"    {s.formula}")
        lines.append(f"    {s.description}; result {s.result}")
    lines += [
        "",
        "BALANCE",
        "-" * 60,
        f"  Total credits: {fmt(bv.total_credits)}",
        f"  Total debits:  {fmt(bv.total_debits)}",
        f"  Net balance:   {fmt(bv.net_balance)} (tolerance {bv.precision})",
        "",
        "ALGORITHM CROSS-CHECK",
        "-" * 60,
    ]
    for v in proof.algorithm_verifications:
        lines.append(
            f"  {v.algorithm:<14} {v.payment_count:>3} payment(s)  moves {fmt(v.total_settled):>10}"
            f"  {'agrees' if v.agrees else 'DISAGREES'}"
        )
    if proof.discrepancies:
        lines += ["", "DISCREPANCIES", "-" * 60]
        lines += [f"  - {d}" for d in proof.discrepancies]
    lines += ["", f"Checksum:  {proof.checksum}"]
    if proof.signature:
        lines.append(f"Signed by: {proof.signature.signer_public_key}")
    return "\n".join(lines) + "\n"


def render_compact(proof: MathematicalProof, width: int = 40, max_items: int = 5) -> str:
    """
    Message-sized summary. No line is longer than width; at most max_items
    payments are listed, then "+N more".
    """
    def fit(text: str) -> str:
        return text if len(text) <= width else text[: width - 1] + "…"

    mark = "✅" if proof.is_valid else "❌"
    lines = [fit(f"{mark} Settlement {proof.session_id}")]
    if not proof.payments:
        lines.append(fit("No payments needed"))
    for p in proof.payments[:max_items]:
        amount = fmt(p.amount)
        names = f"{p.from_name} → {p.to_name}"
        room = max(width - len(amount) - 1, 1)
        if len(names) > room:
            names = names[: max(room - 1, 1)] + "…"
        lines.append(f"{names:<{room}} {amount}")
    hidden = len(proof.payments) - max_items
    if hidden > 0:
        lines.append(fit(f"+{hidden} more"))
    lines.append(fit(f"Total {fmt(proof.total_settled)} in {len(proof.payments)} payment(s)"))
    lines.append(fit(f"Proof {proof.checksum[:12]}"))
    return "\n".join(lines)


def render_tabular(proof: MathematicalProof) -> str:
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")

    w.writerow(["[positions]"])
    w.writerow(["player_id", "name", "buy_ins", "cash_outs", "current_chips", "net_position"])
    for p in proof.positions:
        w.writerow([p.player_id, p.name, p.buy_ins, p.cash_outs, p.current_chips, p.net_position])

    w.writerow([])
    w.writerow(["[settlements]"])
    w.writerow(["priority", "from_player", "to_player", "amount"])
    for p in proof.payments:
        w.writerow([p.priority, p.from_player, p.to_player, p.amount])

    w.writerow([])
    w.writerow(["[steps]"])
    w.writerow(["step", "operation", "formula", "result", "verified"])
    for s in proof.calculation_steps:
        w.writerow([s.step_number, s.operation, s.formula, s.result, s.verified])

    bv = proof.balance_verification
    w.writerow([])
    w.writerow(["[summary]"])
    w.writerow(["metric", "value"])
    w.writerow(["total_credits", bv.total_credits])
    w.writerow(["total_debits", bv.total_debits])
    w.writerow(["net_balance", bv.net_balance])
    w.writerow(["payments", len(proof.payments)])
    w.writerow(["direct_payments", proof.direct_payment_count])
    w.writerow(["consensus", proof.consensus])
    w.writerow(["is_valid", proof.is_valid])

    w.writerow([])
    w.writerow(["[audit]"])
    w.writerow(["field", "value"])
    w.writerow(["proof_id", proof.proof_id])
    w.writerow(["settlement_id", proof.settlement_id])
    w.writerow(["generated_at", proof.generated_at])
    w.writerow(["checksum", proof.checksum])
    if proof.signature:
        w.writerow(["signer_public_key", proof.signature.signer_public_key])
        w.writerow(["signature", proof.signature.value])
    return buf.getvalue()


# ─────────────────────────────────────────────────────────────
# ProofExporter
# ─────────────────────────────────────────────────────────────

class ProofExporter:
    """Renders exports and keeps a bounded history of what was exported."""

    def __init__(self, config: Optional[SettlementConfig] = None, clock: Clock = utc_now) -> None:
        self.config = config or SettlementConfig()
        self.clock = clock
        self._history: Dict[str, Deque[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def render(self, proof: MathematicalProof, fmt_name: str) -> Union[str, Dict[str, Any]]:
        if fmt_name == STRUCTURED:
            return render_structured(proof)
        if fmt_name == NARRATIVE:
            return render_narrative(proof)
        if fmt_name == COMPACT:
            return render_compact(proof, self.config.compact_line_width, self.config.compact_max_items)
        if fmt_name == TABULAR:
            return render_tabular(proof)
        raise InputValidationError("Unknown export format", {"format": fmt_name, "choices": ", ".join(FORMATS)})

    def render_all(self, proof: MathematicalProof) -> Dict[str, Any]:
        return {name: self.render(proof, name) for name in FORMATS}

    def export(self, proof: MathematicalProof, fmt_name: str) -> Result[ExportResult]:
        return capture(self._export, proof, fmt_name)

    def _export(self, proof: MathematicalProof, fmt_name: str) -> ExportResult:
        started = time.perf_counter()
        content = self.render(proof, fmt_name)
        data = (
            content if isinstance(content, str)
            else json.dumps(content, sort_keys=True, ensure_ascii=False)
        ).encode("utf-8")
        result = ExportResult(
            export_id=     f"exp-{uuid.uuid4().hex[:12]}",
            proof_id=      proof.proof_id,
            format=        fmt_name,
            content=       content,
            size=          len(data),
            checksum=      hashlib.sha256(data).hexdigest(),
            generated_at=  format_timestamp(self.clock()),
            processing_ms= (time.perf_counter() - started) * 1000,
        )
        with self._lock:
            history = self._history.setdefault(
                proof.proof_id, deque(maxlen=self.config.export_history_limit),
            )
            history.append(result.metadata())
        logger.debug("Exported %s as %s (%d bytes)", proof.proof_id, fmt_name, result.size)
        return result

    def history(self, proof_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._history.get(proof_id, ()))
