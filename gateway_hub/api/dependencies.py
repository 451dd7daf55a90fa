"""FastAPI dependencies: wired services and API-key checks."""
from fastapi import Request

from gateway_hub.container import GatewayServices
from gateway_hub.core.errors import AuthenticationError, AuthorizationError


def get_services(request: Request) -> GatewayServices:
    """Services built by the application lifespan."""
    return request.app.state.services


def _presented_key(request: Request, services: GatewayServices) -> str:
    return request.headers.get(services.settings.api_key_header, "")


async def require_api_key(request: Request) -> None:
    """
    Require a valid API key on payment routes.

    An empty ``api_keys`` setting disables the check.

    Raises:
        AuthenticationError: If the key is missing or unknown
    """
    services = get_services(request)
    accepted = services.settings.get_api_keys()
    if not accepted:
        return
    key = _presented_key(request, services)
    if not key:
        raise AuthenticationError("API key required")
    if key not in accepted and key not in services.settings.get_admin_api_keys():
        raise AuthenticationError("Invalid API key")


async def require_admin_key(request: Request) -> None:
    """
    Require an admin API key.

    Raises:
        AuthenticationError: If no key is presented
        AuthorizationError: If the key is not an admin key
    """
    services = get_services(request)
    if not services.settings.get_api_keys():
        return
    key = _presented_key(request, services)
    if not key:
        raise AuthenticationError("API key required")
    if key not in services.settings.get_admin_api_keys():
        raise AuthorizationError("Admin privileges required")
