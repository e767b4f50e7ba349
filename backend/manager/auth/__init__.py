"""Manager authentication: Starlette backend, client user model, and route policy."""

from manager.auth.backend import BearerSecretBackend
from manager.auth.models import AuthenticatedClient
from manager.auth.policy import protected_api, public_route, validate_route_auth_policy

__all__ = [
    "AuthenticatedClient",
    "BearerSecretBackend",
    "protected_api",
    "public_route",
    "validate_route_auth_policy",
]
