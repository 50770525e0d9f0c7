"""Request-scoped dependencies shared by the sync endpoint routes."""

from __future__ import annotations

from fastapi import Request
from sqlalchemy.engine import Engine


def get_request_engine(request: Request) -> Engine:
    """Return the Engine bound to the application by `create_app`."""
    return request.app.state.engine


__all__ = ["get_request_engine"]
