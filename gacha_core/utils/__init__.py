"""Shared utilities for the gacha backend."""

from .error_messages import get_error_message
from .errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    GachaError,
    NotFoundError,
    RateLimitedError,
)
from .network import is_trusted_proxy, resolve_client_ip
from .passwords import hash_password, verify_password

__all__ = [
    "get_error_message",
    "GachaError",
    "AuthError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "resolve_client_ip",
    "is_trusted_proxy",
    "hash_password",
    "verify_password",
]
