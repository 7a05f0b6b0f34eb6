"""Shared request dependencies."""

from fastapi import Request

from app.services.orchestrator import Orchestrator


def get_orchestrator(request: Request) -> Orchestrator:
    """The orchestrator owned by the running application."""
    return request.app.state.orchestrator
