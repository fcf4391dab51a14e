"""
chipsettle/cli/verify.py

chipsettle verify: re-check a structured proof export.

Runs the assertions embedded in the export against its own data, then the
full integrity check (checksum, signature, rebuilt steps, algorithm rerun,
age). Needs nothing but the export file.

Usage:
    chipsettle verify proof.json
    chipsettle verify proof.json --format json
    chipsettle verify proof.json --assertions-only

Exit codes:
    0  Proof valid
    1  Proof has violations
    2  Error (file unreadable, not a proof export)
"""

import json
import sys
from pathlib import Path

import click

from chipsettle.cli._output import (
    EXIT_ERROR,
    EXIT_OK,
    EXIT_VIOLATIONS,
    emit_error,
    emit_json,
    header,
    row_fail,
    row_info,
    row_ok,
    verdict,
)
from chipsettle.core.config import load_config, SettlementConfig
from chipsettle.core.exceptions import ChipSettleError
from chipsettle.proof.exports import parse_structured, reverify_structured
from chipsettle.proof.integrity import verify_proof


@click.command(name="verify")
@click.argument("export", type=click.Path(dir_okay=False))
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Output format.",
)
@click.option("--assertions-only", is_flag=True, default=False,
              help="Only re-run the embedded assertions; skip signature and age checks.")
@click.pass_obj
def verify_command(obj: dict, export: str, fmt: str, assertions_only: bool) -> None:
    """Verify a structured proof EXPORT produced by `chipsettle prove --export structured`."""
    path = Path(export)
    if not path.exists():
        emit_error("verify", f"Export not found: {export}", fmt)
        sys.exit(EXIT_ERROR)

    try:
        document = json.loads(path.read_text(encoding="utf-8"))
        proof = parse_structured(document)
        assertions = reverify_structured(document)
        config = load_config(obj["config"])[0] if obj.get("config") else SettlementConfig()
    except json.JSONDecodeError as exc:
        emit_error("verify", f"Export is not valid JSON: {exc}", fmt)
        sys.exit(EXIT_ERROR)
    except ChipSettleError as exc:
        emit_error("verify", str(exc), fmt)
        sys.exit(EXIT_ERROR)

    integrity = None if assertions_only else verify_proof(proof, config)
    valid = all(assertions.values()) and (integrity is None or integrity.is_valid)

    if fmt == "json":
        emit_json("verify", {
            "export":     str(path),
            "proof_id":   proof.proof_id,
            "valid":      valid,
            "assertions": assertions,
            "integrity":  integrity.to_dict() if integrity else None,
        })
        sys.exit(EXIT_OK if valid else EXIT_VIOLATIONS)

    header("Proof verification")
    click.echo(row_info("Export", str(path)))
    click.echo(row_info("Proof", proof.proof_id))
    click.echo(row_info("Session", proof.session_id))
    click.echo(row_info("Generated", proof.generated_at))
    click.echo()
    for name, passed in assertions.items():
        click.echo((row_ok if passed else row_fail)(name, "reproduced" if passed else "does not reproduce"))
    if integrity is not None:
        checks = [
            ("Checksum",   integrity.checksum_valid),
            ("Signature",  integrity.signature_valid),
            ("Steps",      integrity.mathematically_sound),
            ("Balance",    integrity.balance_valid),
            ("Consensus",  integrity.algorithm_consensus),
            ("Timestamp",  integrity.timestamp_valid),
        ]
        for label, passed in checks:
            click.echo((row_ok if passed else row_fail)(label, "ok" if passed else "failed"))
        for warning in integrity.warnings:
            click.echo(row_info("Warning", warning))
        for error in integrity.errors:
            click.echo(row_info("Error", error))
    click.echo()
    failures = sum(1 for v in assertions.values() if not v) + (len(integrity.errors) if integrity else 0)
    verdict(valid, "proof reproduces from its own data", f"{failures} violation(s)")
    sys.exit(EXIT_OK if valid else EXIT_VIOLATIONS)
