"""Response schemas for the health endpoints."""

from __future__ import annotations

from pydantic import BaseModel


class StatusResponse(BaseModel):
    status: str


class ErrorResponse(BaseModel):
    """Error envelope shared by every non-2xx response."""

    error: str
    detail: str = ""
