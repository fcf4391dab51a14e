"""
chipsettle/proof/steps.py

Pure builders for proof content.

Shared by the generator, which builds a proof, and by verify_proof, which
rebuilds the same content from a proof's own data and compares.
"""

from decimal import Decimal
from typing import List

from chipsettle.core.config import SettlementConfig
from chipsettle.core.models import (
    Payment,
    PlayerPosition,
    RoundingOperation,
    net_flows,
    plan_total,
    precision_loss,
)
from chipsettle.core.money import ZERO, fmt, sub_cent_residue, total
from chipsettle.optimizer.optimizer import DebtOptimizer, reduction_percentage
from chipsettle.optimizer.strategies import Algorithm
from chipsettle.proof.models import (
    AlgorithmVerification,
    FractionalCentIssue,
    PrecisionReport,
    ProofStep,
)

VERIFICATION_ALGORITHMS = (Algorithm.DIRECT, Algorithm.GREEDY, Algorithm.BALANCED_FLOW)


def build_precision_report(
    positions:    List[PlayerPosition],
    payments:     List[Payment],
    rounding_ops: List[RoundingOperation],
    tolerance:    Decimal,
) -> PrecisionReport:
    issues = [
        FractionalCentIssue(f"position {p.player_id}", p.net_position, sub_cent_residue(p.net_position))
        for p in positions if sub_cent_residue(p.net_position) > 0
    ]
    issues += [
        FractionalCentIssue(f"payment {p.from_player}->{p.to_player}", p.amount, sub_cent_residue(p.amount))
        for p in payments if sub_cent_residue(p.amount) > 0
    ]
    # Position residues are reported but resolved by logged rounding.
    unresolved = [i for i in issues if i.subject.startswith("payment")]
    return PrecisionReport(
        rounding_operations=    list(rounding_ops),
        fractional_cent_issues= unresolved,
        total_precision_loss=   precision_loss(rounding_ops),
        tolerance=              tolerance,
    )


def build_steps(
    positions:    List[PlayerPosition],
    payments:     List[Payment],
    direct_count: int,
    precision:    PrecisionReport,
    tolerance:    Decimal,
) -> List[ProofStep]:
    tol = str(tolerance)
    chips = total(p.current_chips for p in positions)
    cash_outs = total(p.cash_outs for p in positions)
    buy_ins = total(p.buy_ins for p in positions)
    net_sum = total(p.net_position for p in positions)
    credits = total(p.net_position for p in positions if p.net_position > 0)
    debits = total(-p.net_position for p in positions if p.net_position < 0)
    flows = net_flows(payments)
    received = total(v for v in flows.values() if v > 0)
    worst = max(
        (abs(flows.get(p.player_id, ZERO) - p.net_position) for p in positions),
        default=ZERO,
    )
    stray = sorted(set(flows) - {p.player_id for p in positions})
    reduction = reduction_percentage(direct_count, len(payments))
    issues = len(precision.fractional_cent_issues)

    return [
        ProofStep(
            step_number= 1,
            operation=   "Player Net Position Calculation",
            description= f"Net position of {len(positions)} player(s) from chips, cash-outs and buy-ins",
            formula=     "NetPosition = (CurrentChips + CashOuts) − BuyIns",
            inputs=      {"current_chips": str(chips), "cash_outs": str(cash_outs), "buy_ins": str(buy_ins)},
            result=      str(net_sum),
            verified=    abs(net_sum) <= tolerance and chips + cash_outs - buy_ins == net_sum,
            tolerance=   tol,
        ),
        ProofStep(
            step_number= 2,
            operation=   "Settlement Payment Calculation",
            description= f"{len(payments)} payment(s) move money from debtors to creditors",
            formula=     "TotalPayments = Σ PaymentAmounts",
            inputs=      {"payment_count": str(len(payments)), "total_owed": str(credits)},
            result=      str(plan_total(payments)),
            verified=    all(p.amount > 0 for p in payments) and abs(received - credits) <= tolerance,
            tolerance=   tol,
        ),
        ProofStep(
            step_number= 3,
            operation=   "Mathematical Balance Verification",
            description= "Money owed to winners equals money owed by losers",
            formula=     "NetBalance = ΣCredits − ΣDebits",
            inputs=      {"total_credits": str(credits), "total_debits": str(debits)},
            result=      str(credits - debits),
            verified=    abs(credits - debits) <= tolerance,
            tolerance=   tol,
        ),
        ProofStep(
            step_number= 4,
            operation=   "Player Settlement Verification",
            description= "Each player's received minus paid reproduces their net position",
            formula=     "SettlementAmount = Received − Paid",
            inputs=      {"players": str(len(positions)), "unknown_payees": ",".join(stray)},
            result=      str(worst),
            verified=    worst <= tolerance and not stray,
            tolerance=   tol,
        ),
        ProofStep(
            step_number= 5,
            operation=   "Optimization Efficiency Verification",
            description= f"{direct_count} direct payment(s) reduced to {len(payments)}",
            formula=     "Reduction = ((Direct − Optimized) / Direct) × 100",
            inputs=      {"direct": str(direct_count), "optimized": str(len(payments))},
            result=      str(reduction),
            verified=    len(payments) <= direct_count,
            tolerance=   tol,
        ),
        ProofStep(
            step_number= 6,
            operation=   "Precision and Rounding Verification",
            description= f"{len(precision.rounding_operations)} rounding operation(s) logged",
            formula=     "FractionalCentIssues = count(residue > 0)",
            inputs=      {"total_precision_loss": str(precision.total_precision_loss)},
            result=      str(issues),
            verified=    precision.is_within_tolerance,
            tolerance=   tol,
        ),
    ]


def verify_algorithms(
    optimizer:  DebtOptimizer,
    session_id: str,
    positions:  List[PlayerPosition],
    primary:    str,
    config:     SettlementConfig,
) -> List[AlgorithmVerification]:
    """
    Rerun the verification set. Money moved is measured as Σ positive net
    flows, which is the same for relaying and non-relaying plans.
    """
    algorithms = list(VERIFICATION_ALGORITHMS)
    primary_alg = Algorithm.parse(primary)
    if primary_alg not in algorithms:
        algorithms.append(primary_alg)

    credits = total(p.net_position for p in positions if p.net_position > 0)
    verifications = []
    for algorithm in algorithms:
        res = optimizer.recompute(session_id, positions, algorithm, config)
        if not res:
            verifications.append(AlgorithmVerification(
                algorithm.value, algorithm.value, 0, ZERO, False, credits, False,
            ))
            continue
        result = res.value
        flows = net_flows(result.optimized_payments)
        moved = total(v for v in flows.values() if v > 0)
        settles = all(
            abs(flows.get(p.player_id, ZERO) - p.net_position) <= config.tolerance
            for p in positions
        )
        difference = abs(moved - credits)
        verifications.append(AlgorithmVerification(
            algorithm=       algorithm.value,
            algorithm_used=  result.algorithm_used,
            payment_count=   len(result.optimized_payments),
            total_settled=   moved,
            settles_players= settles,
            difference=      difference,
            agrees=          settles and difference <= config.tolerance,
        ))
    return verifications


def summarize(positions: List[PlayerPosition], payments: List[Payment], is_valid: bool) -> str:
    winners = sum(1 for p in positions if p.net_position > 0)
    losers = sum(1 for p in positions if p.net_position < 0)
    settled = total(p.net_position for p in positions if p.net_position > 0)
    verdict = "verified" if is_valid else "NOT verified"
    return (
        f"{len(positions)} players ({winners} up, {losers} down) settle "
        f"{fmt(settled)} in {len(payments)} payment(s); the settlement is "
        f"mathematically {verdict}."
    )


