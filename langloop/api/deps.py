"""Shared FastAPI dependencies."""

from fastapi import Request

from langloop.services.container import Services


def get_services(request: Request) -> Services:
    """Service graph built at startup and stored on the app."""
    return request.app.state.services
