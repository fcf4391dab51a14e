"""
chipsettle/cli/_output.py

Shared helpers for the chipsettle commands: colour, row formatting, error
output and loading a snapshot into a SettlementContext.
"""

import json
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from chipsettle.core.exceptions import InputValidationError
from chipsettle.runtime.context import SettlementContext
from chipsettle.sources.snapshot import JsonSnapshotSource

EXIT_OK         = 0
EXIT_VIOLATIONS = 1
EXIT_ERROR      = 2

BAR_HEAVY = "═" * 64
BAR_LIGHT = "─" * 64


# ── ANSI color ────────────────────────────────────────────────────────────────

class _Color:
    """
    Minimal ANSI colour wrapper.
    Auto-disables when stdout is not a TTY or --no-color is passed.
    """
    _on: bool = True

    @classmethod
    def configure(cls, enabled: bool) -> None:
        cls._on = enabled and sys.stdout.isatty()

    @classmethod
    def _wrap(cls, code: str, s: str) -> str:
        return f"\033[{code}m{s}\033[0m" if cls._on else s

    @classmethod
    def green(cls, s: str) -> str:
        return cls._wrap("32", s)

    @classmethod
    def red(cls, s: str) -> str:
        return cls._wrap("31", s)

    @classmethod
    def yellow(cls, s: str) -> str:
        return cls._wrap("33", s)

    @classmethod
    def cyan(cls, s: str) -> str:
        return cls._wrap("36", s)

    @classmethod
    def bold(cls, s: str) -> str:
        return cls._wrap("1", s)

    @classmethod
    def dim(cls, s: str) -> str:
        return cls._wrap("2", s)


def row_ok(label: str, value: str) -> str:
    return f"  {_Color.dim(f'{label:<16}')}  {_Color.green('✅')}  {value}"


def row_fail(label: str, value: str) -> str:
    return f"  {_Color.dim(f'{label:<16}')}  {_Color.red('❌')}  {value}"


def row_info(label: str, value: str) -> str:
    return f"  {_Color.dim(f'{label:<16}')}     {value}"


def header(title: str) -> None:
    click.echo()
    click.echo(_Color.bold(f"  {BAR_HEAVY}"))
    click.echo(_Color.bold(f"  chipsettle  ·  {title}"))
    click.echo(_Color.bold(f"  {BAR_HEAVY}"))
    click.echo()


def verdict(valid: bool, ok_text: str, fail_text: str) -> None:
    click.echo(f"  {BAR_LIGHT}")
    if valid:
        click.echo(_Color.green(_Color.bold(f"  ✅  VALID  ·  {ok_text}")))
    else:
        click.echo(_Color.red(_Color.bold(f"  ❌  INVALID  ·  {fail_text}")))
    click.echo(f"  {BAR_LIGHT}")
    click.echo()


def emit_json(command: str, body: dict) -> None:
    click.echo(json.dumps({f"chipsettle_{command}": body}, indent=2, ensure_ascii=False))


def emit_error(command: str, msg: str, fmt: str) -> None:
    """Emit an error in the requested format. Never raises."""
    if fmt == "json":
        emit_json(command, {"error": msg, "valid": False})
    else:
        click.echo(_Color.red(f"\n  ❌  ERROR: {msg}\n"), err=True)


def fail(command: str, error, fmt: str) -> None:
    emit_error(command, str(error), fmt)
    sys.exit(EXIT_ERROR)


# ── Context loading ───────────────────────────────────────────────────────────

def load_context(
    snapshot:    str,
    session_id:  Optional[str],
    config_file: Optional[str],
    key_path:    Optional[str] = None,
) -> Tuple[SettlementContext, str]:
    """
    Build a context over a snapshot file and pick the session to settle.
    Raises a ChipSettleError for anything the user can fix.
    """
    source = JsonSnapshotSource.from_file(Path(snapshot))
    if session_id is None:
        ids = source.session_ids
        if len(ids) != 1:
            raise InputValidationError(
                "Snapshot holds several sessions; choose one with --session",
                {"sessions": ", ".join(ids)},
            )
        session_id = ids[0]
    context = SettlementContext.from_config(
        source,
        config_file= Path(config_file) if config_file else None,
        key_path=    Path(key_path) if key_path else None,
    )
    return context, session_id
