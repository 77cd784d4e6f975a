"""Core modules for the gacha storefront backend."""

from .config import Config, RateLimitRule, load_config
from .database import Database
from .rate_limiter import RateLimiter

__all__ = [
    "Config",
    "RateLimitRule",
    "load_config",
    "Database",
    "RateLimiter",
]
