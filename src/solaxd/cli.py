"""Command line entry point for the solaxd daemon."""
from __future__ import annotations

from .x1.runner import app


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
