"""Health endpoints for crashwatch.

Exposes:
    create_app -- FastAPI application factory serving /healthz and /readyz.
"""

from crashwatch.api.app import create_app

__all__ = ["create_app"]
