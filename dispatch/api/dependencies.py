"""FastAPI dependency injection helpers."""

from fastapi import Request

from dispatch.core import DispatchCore


def get_core(request: Request) -> DispatchCore:
    """The service container built in the application lifespan."""
    return request.app.state.core
