"""
chipsettle/cli/prove.py

chipsettle prove: optimize, validate and produce a signed proof.

Usage:
    chipsettle prove game.json                                  Narrative proof to stdout
    chipsettle prove game.json --export structured -o p.json    Re-verifiable JSON export
    chipsettle prove game.json --export compact                 Message-sized summary
    chipsettle prove game.json --key settle.key                 Sign with a persistent key

Exit codes:
    0  Proof generated and valid
    1  Proof generated but the settlement did not verify
    2  Error
"""

import sys
from pathlib import Path
from typing import Optional

import click

from chipsettle.cli._output import EXIT_OK, EXIT_VIOLATIONS, _Color, fail, load_context
from chipsettle.cli.settle import ALGORITHMS
from chipsettle.core.exceptions import ChipSettleError
from chipsettle.optimizer.strategies import Algorithm
from chipsettle.proof.exports import FORMATS, NARRATIVE


@click.command(name="prove")
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--algorithm",
    type=click.Choice(ALGORITHMS, case_sensitive=False),
    default=Algorithm.GREEDY.value,
    show_default=True,
    help="Settlement strategy.",
)
@click.option("--session", "session_id", default=None, metavar="ID",
              help="Session to settle when the snapshot holds several.")
@click.option(
    "--export", "export_format",
    type=click.Choice(FORMATS, case_sensitive=False),
    default=NARRATIVE,
    show_default=True,
    help="Export format to write.",
)
@click.option("--key", "key_path", type=click.Path(dir_okay=False), default=None, metavar="PATH",
              help="Ed25519 signing key (PEM). Created if missing; ephemeral if omitted.")
@click.option("--output", "-o", "output", type=click.Path(dir_okay=False), default=None, metavar="PATH",
              help="Write the export to PATH instead of stdout.")
@click.pass_obj
def prove_command(
    obj:           dict,
    snapshot:      str,
    algorithm:     str,
    session_id:    Optional[str],
    export_format: str,
    key_path:      Optional[str],
    output:        Optional[str],
) -> None:
    """Generate a signed mathematical proof of the settlement for SNAPSHOT."""
    try:
        context, session_id = load_context(snapshot, session_id, obj.get("config"), key_path)
    except ChipSettleError as exc:
        fail("prove", exc, "human")

    try:
        run = context.settle(session_id, algorithm)
    finally:
        context.close()
    if not run:
        fail("prove", run.error, "human")
    run = run.value

    exported = context.exporter.export(run.proof, export_format)
    if not exported:
        fail("prove", exported.error, "human")
    text = exported.value.text()

    if output:
        Path(output).write_text(text, encoding="utf-8")
        status = _Color.green("valid") if run.is_valid else _Color.red("INVALID")
        click.echo(f"  Proof {run.proof.proof_id} ({status}) written to {output}", err=True)
    else:
        click.echo(text)
    sys.exit(EXIT_OK if run.is_valid else EXIT_VIOLATIONS)
