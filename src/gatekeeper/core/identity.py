"""
Client identity strategies for the rate limiter.

Identities are namespaced strings:
- ip:<client address>
- key:<sha256 of the API key, first 32 hex chars>
- user:<authenticated user id>

The api_key and user_id strategies fall back to the client address when the
request carries no key or no authenticated user.
"""

import hashlib
from typing import Callable

import structlog
from starlette.requests import Request

logger = structlog.get_logger(__name__)

IdentityStrategy = Callable[[Request], str]


def client_ip(request: Request) -> str:
    """Address of the connected peer."""
    if request.client is None or not request.client.host:
        return "unknown"
    return request.client.host


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:32]


def ip_identity(request: Request) -> str:
    return f"ip:{client_ip(request)}"


def api_key_identity(header_name: str = "X-API-Key") -> IdentityStrategy:
    """Identity from an API key header or `api_key` query parameter."""

    def identify(request: Request) -> str:
        api_key = request.headers.get(header_name) or request.query_params.get("api_key")
        if not api_key:
            return ip_identity(request)
        return f"key:{hash_api_key(api_key.strip())}"

    return identify


def user_id_identity(request: Request) -> str:
    """Identity from request.state.user_id, set by an upstream auth layer."""
    user_id = getattr(request.state, "user_id", None)
    if user_id is None or user_id == "":
        return ip_identity(request)
    return f"user:{user_id}"


def get_identity_strategy(name: str, api_key_header: str = "X-API-Key") -> IdentityStrategy:
    """Resolve a configured strategy name."""
    if name == "ip":
        return ip_identity
    if name == "api_key":
        return api_key_identity(api_key_header)
    if name == "user_id":
        return user_id_identity
    raise ValueError(f"Unknown identity strategy: {name}")
