"""
chipsettle/optimizer/strategies.py

Payment-plan strategies.

All strategies share one shape:

    strategy(balances, deadline) -> List[Transfer]

where balances are whole cents per player (positive = owed money) that sum
to exactly zero, and a Transfer is (payer_id, payee_id, cents). They are
pure and deterministic: ties are always broken by player id.

The set is closed. compute_plan() dispatches through _STRATEGIES, which is
checked against the Algorithm enum at import time, so a new enum member
without an implementation fails on import rather than at request time.

    DIRECT          every debtor pays every creditor a proportional share
    GREEDY          largest debtor pays largest creditor, repeat
    HUB             everything flows through the largest creditor
    BALANCED_FLOW   spread incoming payments evenly over creditors
    MINIMAL         exact minimum count (subset DP), greedy beyond a size cap
"""

import heapq
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from chipsettle.core.exceptions import InputValidationError, OptimizationTimeoutError
from chipsettle.core.models import RoundingOperation

logger = logging.getLogger(__name__)

Transfer = Tuple[str, str, int]


class Algorithm(str, Enum):
    DIRECT        = "direct"
    GREEDY        = "greedy"
    HUB           = "hub"
    BALANCED_FLOW = "balanced_flow"
    MINIMAL       = "minimal"

    @classmethod
    def parse(cls, value) -> "Algorithm":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower().replace("-", "_"))
        except ValueError:
            raise InputValidationError(
                "Unknown settlement algorithm",
                {"algorithm": value, "choices": ", ".join(a.value for a in cls)},
            ) from None


# Strategies whose plans move each cent once, so Σ plan == Σ debts.
NON_RELAYING = frozenset({Algorithm.DIRECT, Algorithm.GREEDY, Algorithm.BALANCED_FLOW, Algorithm.MINIMAL})


@dataclass(frozen=True)
class Balance:
    player_id: str
    cents:     int


@dataclass
class Plan:
    algorithm_used: "Algorithm"
    transfers:      List[Transfer]
    notes:          List[str]               = field(default_factory=list)
    rounding_ops:   List[RoundingOperation] = field(default_factory=list)


class Deadline:
    """Monotonic deadline. None budget means unbounded."""

    def __init__(self, budget_ms: Optional[int]) -> None:
        self.budget_ms = budget_ms
        self._expires = None if budget_ms is None else time.monotonic() + budget_ms / 1000.0

    def check(self, where: str) -> None:
        if self._expires is not None and time.monotonic() > self._expires:
            raise OptimizationTimeoutError(
                "Optimization time budget exceeded",
                {"stage": where, "budget_ms": self.budget_ms},
            )


_UNBOUNDED = Deadline(None)


def _split(balances: List[Balance]) -> Tuple[List[Balance], List[Balance]]:
    debtors   = sorted((b for b in balances if b.cents < 0), key=lambda b: b.player_id)
    creditors = sorted((b for b in balances if b.cents > 0), key=lambda b: b.player_id)
    return debtors, creditors


# ─────────────────────────────────────────────────────────────
# DIRECT
# ─────────────────────────────────────────────────────────────

def direct(balances: List[Balance], deadline: Deadline = _UNBOUNDED, rounding_log=None) -> List[Transfer]:
    """
    Proportional baseline: debtor i pays creditor j

        floor(debt_i × credit_j / total)

    then leftover cents are placed by a north-west corner pass over the
    row/column residuals, so every row sums to the debt and every column
    to the credit. At most debtors × creditors transfers.
    """
    debtors, creditors = _split(balances)
    if not debtors or not creditors:
        return []
    grand = sum(c.cents for c in creditors)
    matrix = [[(-d.cents * c.cents) // grand for c in creditors] for d in debtors]

    row_left = [-d.cents - sum(row) for d, row in zip(debtors, matrix)]
    col_left = [c.cents - sum(matrix[i][j] for i in range(len(debtors))) for j, c in enumerate(creditors)]
    i = j = 0
    while i < len(debtors) and j < len(creditors):
        deadline.check("direct")
        step = min(row_left[i], col_left[j])
        matrix[i][j] += step
        row_left[i] -= step
        col_left[j] -= step
        if row_left[i] == 0:
            i += 1
        if j < len(creditors) and col_left[j] == 0:
            j += 1

    transfers = []
    for i, d in enumerate(debtors):
        for j, c in enumerate(creditors):
            cents = matrix[i][j]
            if rounding_log is not None:
                exact = Decimal(-d.cents * c.cents) / Decimal(grand) / 100
                if exact * 100 != cents:
                    rounding_log.append(RoundingOperation(
                        description= f"direct share {d.player_id}->{c.player_id}",
                        original=    exact.quantize(Decimal("0.000001")),
                        rounded=     Decimal(cents) / 100,
                        kind=        "share",
                    ))
            if cents > 0:
                transfers.append((d.player_id, c.player_id, cents))
    return transfers


# ─────────────────────────────────────────────────────────────
# GREEDY
# ─────────────────────────────────────────────────────────────

def greedy(balances: List[Balance], deadline: Deadline = _UNBOUNDED) -> List[Transfer]:
    """Match largest debtor with largest creditor until all are settled."""
    debtors   = [(d.cents, d.player_id) for d in balances if d.cents < 0]
    creditors = [(-c.cents, c.player_id) for c in balances if c.cents > 0]
    heapq.heapify(debtors)
    heapq.heapify(creditors)

    transfers = []
    while debtors and creditors:
        deadline.check("greedy")
        owe, payer = heapq.heappop(debtors)
        due, payee = heapq.heappop(creditors)
        cents = min(-owe, -due)
        transfers.append((payer, payee, cents))
        if -owe > cents:
            heapq.heappush(debtors, (owe + cents, payer))
        if -due > cents:
            heapq.heappush(creditors, (due + cents, payee))
    return transfers


# ─────────────────────────────────────────────────────────────
# HUB
# ─────────────────────────────────────────────────────────────

def hub(balances: List[Balance], deadline: Deadline = _UNBOUNDED) -> List[Transfer]:
    """
    Largest creditor (ties: smallest id) is the hub. Every debtor pays the
    hub in full; the hub pays every other creditor. debtors + creditors − 1
    transfers, and the hub relays money it does not keep.
    """
    debtors, creditors = _split(balances)
    if not debtors or not creditors:
        return []
    center = min(creditors, key=lambda c: (-c.cents, c.player_id))
    transfers = []
    for d in debtors:
        deadline.check("hub")
        transfers.append((d.player_id, center.player_id, -d.cents))
    for c in creditors:
        if c.player_id != center.player_id:
            transfers.append((center.player_id, c.player_id, c.cents))
    return transfers


# ─────────────────────────────────────────────────────────────
# BALANCED FLOW
# ─────────────────────────────────────────────────────────────

def balanced_flow(balances: List[Balance], deadline: Deadline = _UNBOUNDED) -> List[Transfer]:
    """
    Debtors, largest first, pay whichever creditor has received the fewest
    payments so far (ties: largest remaining credit, then id).
    """
    debtors, creditors = _split(balances)
    remaining = {c.player_id: c.cents for c in creditors}
    incoming  = {c.player_id: 0 for c in creditors}

    transfers = []
    for d in sorted(debtors, key=lambda b: (b.cents, b.player_id)):
        owe = -d.cents
        while owe > 0:
            deadline.check("balanced_flow")
            payee = min(
                (pid for pid, left in remaining.items() if left > 0),
                key=lambda pid: (incoming[pid], -remaining[pid], pid),
            )
            cents = min(owe, remaining[payee])
            transfers.append((d.player_id, payee, cents))
            owe -= cents
            remaining[payee] -= cents
            incoming[payee] += 1
    return transfers


# ─────────────────────────────────────────────────────────────
# MINIMAL
# ─────────────────────────────────────────────────────────────

def _zero_sum_groups(players: List[Balance], deadline: Deadline) -> List[List[Balance]]:
    """
    Partition players into the largest number of zero-sum groups.

    best[mask] = most zero-sum groups an ordering of mask can be cut into.
    A group of k players settles in k − 1 transfers, so maximising groups
    minimises the transfer count. O(2^n · n).
    """
    n = len(players)
    full = (1 << n) - 1
    sums = [0] * (full + 1)
    for mask in range(1, full + 1):
        low = mask & -mask
        sums[mask] = sums[mask ^ low] + players[low.bit_length() - 1].cents

    best = [0] * (full + 1)
    for mask in range(1, full + 1):
        if mask & 0xFF == 0:
            deadline.check("minimal")
        top = 0
        m = mask
        while m:
            low = m & -m
            top = max(top, best[mask ^ low])
            m ^= low
        best[mask] = top + (1 if sums[mask] == 0 else 0)

    cuts = []
    mask = full
    while mask:
        if sums[mask] == 0:
            cuts.append(mask)
        gain = 1 if sums[mask] == 0 else 0
        m = mask
        while m:
            low = m & -m
            if best[mask ^ low] + gain == best[mask]:
                mask ^= low
                break
            m ^= low

    groups = []
    inner = 0
    for cut in reversed(cuts):
        members = cut & ~inner
        groups.append([players[i] for i in range(n) if members >> i & 1])
        inner = cut
    return groups


def minimal(balances: List[Balance], deadline: Deadline = _UNBOUNDED) -> List[Transfer]:
    players = sorted((b for b in balances if b.cents != 0), key=lambda b: b.player_id)
    transfers = []
    for group in _zero_sum_groups(players, deadline):
        transfers.extend(greedy(group, deadline))
    return transfers


# ─────────────────────────────────────────────────────────────
# Dispatch
# ─────────────────────────────────────────────────────────────

_STRATEGIES: Dict[Algorithm, Callable[..., List[Transfer]]] = {
    Algorithm.DIRECT:        direct,
    Algorithm.GREEDY:        greedy,
    Algorithm.HUB:           hub,
    Algorithm.BALANCED_FLOW: balanced_flow,
    Algorithm.MINIMAL:       minimal,
}

_missing = set(Algorithm) - set(_STRATEGIES)
if _missing:
    raise RuntimeError(f"No strategy registered for {sorted(a.value for a in _missing)}")


def _merge(transfers: List[Transfer]) -> List[Transfer]:
    """Collapse repeated payer→payee pairs into one transfer."""
    merged: Dict[Tuple[str, str], int] = {}
    for payer, payee, cents in transfers:
        merged[(payer, payee)] = merged.get((payer, payee), 0) + cents
    return [(payer, payee, cents) for (payer, payee), cents in merged.items() if cents > 0]


def compute_plan(
    algorithm:           Algorithm,
    balances:            List[Balance],
    deadline:            Optional[Deadline] = None,
    exact_search_limit:  int = 12,
) -> Plan:
    """
    Run one strategy. Balances must sum to zero; raises InputValidationError
    otherwise. OptimizationTimeoutError propagates to the caller, which
    decides on a fallback.
    """
    algorithm = Algorithm.parse(algorithm)
    deadline = deadline or _UNBOUNDED
    if sum(b.cents for b in balances) != 0:
        raise InputValidationError(
            "Balances must sum to zero cents",
            {"sum_cents": sum(b.cents for b in balances)},
        )

    plan = Plan(algorithm_used=algorithm, transfers=[])
    active = sum(1 for b in balances if b.cents != 0)

    if algorithm is Algorithm.MINIMAL and active > exact_search_limit:
        logger.info(
            "Exact search skipped for %d players (limit %d); using greedy",
            active, exact_search_limit,
        )
        plan.algorithm_used = Algorithm.GREEDY
        plan.notes.append(
            f"minimal search limited to {exact_search_limit} players; "
            f"{active} players settled with greedy"
        )
        plan.transfers = greedy(balances, deadline)
    elif algorithm is Algorithm.DIRECT:
        plan.transfers = direct(balances, deadline, rounding_log=plan.rounding_ops)
    else:
        plan.transfers = _STRATEGIES[algorithm](balances, deadline)

    plan.transfers = _merge(plan.transfers)
    logger.debug("%s produced %d transfers", plan.algorithm_used.value, len(plan.transfers))
    return plan
