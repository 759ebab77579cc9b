"""Entry point for `python -m crashwatch`.

Usage:
    python -m crashwatch
    uv run python -m crashwatch
"""

from __future__ import annotations

from crashwatch.app import run

run()
