"""
chipsettle/cli/settle.py

chipsettle optimize / chipsettle compare

Usage:
    chipsettle optimize game.json                        Human output (default)
    chipsettle optimize game.json --algorithm minimal    Pick a strategy
    chipsettle optimize game.json --format json          Machine-readable JSON
    chipsettle compare game.json                         Score every strategy

Exit codes:
    0  Settlement valid
    1  Settlement computed but failed validation
    2  Error (bad snapshot, unbalanced session, bad config)
"""

import sys
from typing import Optional

import click

from chipsettle.cli._output import (
    EXIT_OK,
    EXIT_VIOLATIONS,
    _Color,
    emit_json,
    fail,
    header,
    load_context,
    row_fail,
    row_info,
    row_ok,
    verdict,
)
from chipsettle.core.exceptions import ChipSettleError
from chipsettle.core.money import fmt as money
from chipsettle.optimizer.strategies import Algorithm

ALGORITHMS = [a.value for a in Algorithm]

_format_option = click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Output format.",
)
_session_option = click.option(
    "--session", "session_id",
    default=None,
    metavar="ID",
    help="Session to settle when the snapshot holds several.",
)


@click.command(name="optimize")
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--algorithm",
    type=click.Choice(ALGORITHMS, case_sensitive=False),
    default=Algorithm.GREEDY.value,
    show_default=True,
    help="Settlement strategy.",
)
@_session_option
@_format_option
@click.pass_obj
def optimize_command(obj: dict, snapshot: str, algorithm: str, session_id: Optional[str], fmt: str) -> None:
    """
    Compute and validate a payment plan for SNAPSHOT.

    SNAPSHOT is a JSON session snapshot (session, players, transactions).
    """
    try:
        context, session_id = load_context(snapshot, session_id, obj.get("config"))
    except ChipSettleError as exc:
        fail("optimize", exc, fmt)

    try:
        result = context.optimizer.optimize(session_id, algorithm)
        if not result:
            fail("optimize", result.error, fmt)
        validation = context.validator.validate(result.value)
        if not validation:
            fail("optimize", validation.error, fmt)
    finally:
        context.close()

    result, validation = result.value, validation.value
    valid = result.is_valid and validation.is_valid

    if fmt == "json":
        emit_json("optimize", {
            "valid":      valid,
            "result":     result.to_dict(),
            "validation": validation.to_dict(),
        })
        sys.exit(EXIT_OK if valid else EXIT_VIOLATIONS)

    header("Settlement")
    click.echo(row_info("Session", session_id))
    used = result.algorithm_used
    click.echo(row_info("Algorithm", used if used == result.algorithm else f"{used} (asked for {result.algorithm})"))
    click.echo(row_info("Payments",
        f"{len(result.optimized_payments)} instead of {len(result.direct_payments)}  "
        + _Color.dim(f"({result.metrics.reduction_percentage}% fewer)")
    ))
    click.echo(row_info("Total settled", money(result.metrics.total_settled)))
    click.echo()

    for p in result.optimized_payments:
        click.echo(f"  {p.priority:>3}.  {p.from_name:<16} → {p.to_name:<16} {_Color.cyan(money(p.amount)):>12}")
    if not result.optimized_payments:
        click.echo(_Color.dim("  Nobody owes anything."))
    click.echo()

    for step in validation.steps:
        row = row_ok if step.passed else row_fail
        click.echo(row(f"Step {step.step_number}", f"{step.name}: {step.detail}"))
    for warning in validation.warnings:
        click.echo(row_info("Warning", _Color.yellow(warning)))
    for note in result.notes:
        click.echo(row_info("Note", _Color.dim(note)))
    click.echo()

    problems = [e.message for e in validation.errors] + list(result.validation_errors)
    for problem in problems:
        click.echo(f"  {_Color.red('•')} {problem}")
    verdict(valid, "payments balance to the cent", f"{len(problems)} problem(s)")
    sys.exit(EXIT_OK if valid else EXIT_VIOLATIONS)


@click.command(name="compare")
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False))
@_session_option
@_format_option
@click.pass_obj
def compare_command(obj: dict, snapshot: str, session_id: Optional[str], fmt: str) -> None:
    """Score every settlement strategy for SNAPSHOT and recommend one."""
    try:
        context, session_id = load_context(snapshot, session_id, obj.get("config"))
    except ChipSettleError as exc:
        fail("compare", exc, fmt)

    try:
        comparison = context.alternatives.generate(session_id)
    finally:
        context.close()
    if not comparison:
        fail("compare", comparison.error, fmt)
    comparison = comparison.value
    valid = comparison.recommended.result.is_valid

    if fmt == "json":
        emit_json("compare", dict(comparison.to_dict(), valid=valid))
        sys.exit(EXIT_OK if valid else EXIT_VIOLATIONS)

    header("Strategy comparison")
    click.echo(row_info("Session", session_id))
    click.echo()
    click.echo(_Color.bold(f"  {'Option':<24} {'Payments':>8} {'Score':>7}"))
    for alt in sorted(comparison.alternatives, key=lambda a: -a.scores.overall):
        marker = _Color.green("★") if alt.option_id == comparison.recommendation.option_id else " "
        click.echo(f"{marker} {alt.name:<24} {alt.transaction_count:>8} {alt.scores.overall:>7.2f}")
    click.echo()

    rec = comparison.recommendation
    click.echo(row_info("Recommended", f"{comparison.recommended.name}  "
                        + _Color.dim(f"(confidence {rec.confidence:.0%})")))
    for reason in rec.reasoning:
        click.echo(row_info("", reason))
    click.echo(row_info("Complexity", rec.complexity_level))
    click.echo(row_info("Dispute risk", rec.dispute_risk))
    click.echo()
    verdict(valid, "recommended plan settles every player", "recommended plan failed its checks")
    sys.exit(EXIT_OK if valid else EXIT_VIOLATIONS)
