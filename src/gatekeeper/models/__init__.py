"""
Pydantic data models package.

Contains response models for the HTTP API.
"""

from .responses import (
    CacheClearResponse,
    CacheInvalidationResponse,
    CacheStatsResponse,
    ErrorResponse,
    PurgeResponse,
    RateLimitResetResponse,
)

__all__ = [
    "CacheClearResponse",
    "CacheInvalidationResponse",
    "CacheStatsResponse",
    "ErrorResponse",
    "PurgeResponse",
    "RateLimitResetResponse",
]
