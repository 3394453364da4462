"""Subcommands for the tickflow CLI."""

from __future__ import annotations

# Each module exposes its own ``app`` Typer instance.  They are registered in
# :mod:`tickflow.cli.main` with ``app.add_typer`` so their commands are
# available at the top level.
