"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the service
container, the acting address and configuration. The container is built once
in the application lifespan and kept on app.state.
"""

from __future__ import annotations

from fastapi import Depends, Header, Request

from milestone_escrow.config import Settings, get_settings
from milestone_escrow.domain.exceptions import ValidationError
from milestone_escrow.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """Provide the service container built at startup."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("Service container not initialized. Is the lifespan running?")
    return container


def get_app_settings(request: Request) -> Settings:
    """Provide the application settings, preferring the ones the app was built with."""
    return getattr(request.app.state, "settings", None) or get_settings()


def get_token_decimals(settings: Settings = Depends(get_app_settings)) -> int:
    return settings.token_decimals


def get_actor(
    x_actor_address: str = Header(
        ...,
        alias="X-Actor-Address",
        description="Ledger address of the party performing the request",
    ),
) -> str:
    """Provide the acting address from the X-Actor-Address header."""
    actor = x_actor_address.strip()
    if not actor:
        raise ValidationError("X-Actor-Address header must not be empty", field="X-Actor-Address")
    return actor
