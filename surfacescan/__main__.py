"""Entry point for ``python -m surfacescan``."""

from surfacescan.cli import cli

cli()
