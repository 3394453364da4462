"""Command line entry point for tickflow.

Registers the command groups defined under :mod:`tickflow.cli.commands`.
"""
from __future__ import annotations

import logging
import sys

import typer

from .commands import analysis, stream

log = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="Tick ingestion and order-flow analytics")

# Register subcommands
app.add_typer(stream.app)
app.add_typer(analysis.app)


def main() -> int:
    """Entry point used by the ``tickflow`` console script."""
    try:
        app(standalone_mode=False)
        return 0
    except typer.Exit as exc:
        return exc.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
