"""
chipsettle/cli/__init__.py

Root Click command group for the `chipsettle` terminal command, registered
in pyproject.toml as:

    [project.scripts]
    chipsettle = "chipsettle.cli:cli"

Adding a new command:
    1. Create chipsettle/cli/your_command.py with a @click.command()
    2. Import it here
    3. cli.add_command(your_command)
"""

import logging

import click

from chipsettle.cli._output import _Color
from chipsettle.cli.prove import prove_command
from chipsettle.cli.settle import compare_command, optimize_command
from chipsettle.cli.verify import verify_command


@click.group()
@click.version_option(package_name="chipsettle")
@click.option("--config", "config", type=click.Path(exists=True, dir_okay=False), default=None,
              metavar="PATH", help="YAML config with settlement: and warnings: sections.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.option("--no-color", is_flag=True, default=False, help="Disable ANSI color output.")
@click.pass_context
def cli(ctx: click.Context, config, log_level: str, no_color: bool) -> None:
    """
    chipsettle: settle pooled-stake sessions with verifiable proofs.

    \b
    Commands:
      optimize  Compute and validate a payment plan.
      compare   Score every strategy and recommend one.
      prove     Produce a signed proof and export it.
      verify    Re-check a structured proof export.

    \b
    Quick start:
      chipsettle optimize game.json
      chipsettle prove game.json --export structured -o proof.json
      chipsettle verify proof.json
    """
    logging.basicConfig(
        level=  getattr(logging, log_level.upper()),
        format= "%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _Color.configure(not no_color)
    ctx.obj = {"config": config}


cli.add_command(optimize_command)
cli.add_command(compare_command)
cli.add_command(prove_command)
cli.add_command(verify_command)
