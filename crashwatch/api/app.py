"""FastAPI application factory for the crashwatch health endpoints.

Usage::

    from crashwatch.api.app import create_app

    app = create_app(readiness_fn=lambda: watcher.connected)

``/healthz`` answers as long as the process serves requests. ``/readyz``
answers 200 only while ``readiness_fn`` returns True.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from crashwatch.api.schemas import ErrorResponse, StatusResponse

_log = structlog.get_logger(component="api.app")


def create_app(readiness_fn: Callable[[], bool] | None = None) -> FastAPI:
    """Create the health-check application.

    Args:
        readiness_fn: Returns True when the pipeline can accept work. When
                      omitted the app always reports ready.
    """
    from crashwatch import __version__

    app = FastAPI(
        title="crashwatch",
        summary="Crash-loop incident observer",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.readiness_fn = readiness_fn or (lambda: True)

    @app.get("/healthz", response_model=StatusResponse)
    async def healthz() -> StatusResponse:
        return StatusResponse(status="ok")

    @app.get("/readyz", response_model=None)
    async def readyz(request: Request) -> JSONResponse:
        if request.app.state.readiness_fn():
            return JSONResponse(status_code=200, content=StatusResponse(status="ready").model_dump())
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error="NOT_READY", detail="pod watch is not connected").model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_ERROR",
                detail="An unexpected error occurred.",
            ).model_dump(),
        )

    return app
