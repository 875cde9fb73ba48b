"""
`python -m penumbra …` forwards to the Typer CLI defined in `penumbra.cli`.
"""

from __future__ import annotations

import sys

import typer

from penumbra.cli import app

if __name__ == "__main__":  # pragma: no cover
    try:
        app()
    except Exception as exc:  # noqa: BLE001
        typer.echo(f"Unhandled error: {exc}", err=True)
        sys.exit(1)
