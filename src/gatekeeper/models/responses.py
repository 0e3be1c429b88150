"""
API response models.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standard error response model.
    """

    error: str = Field(description="Error code")
    message: str = Field(description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional error details"
    )


class CacheInvalidationResponse(BaseModel):
    """Result of dropping one cache entry."""

    key: str = Field(description="Cache key")
    removed: bool = Field(description="Whether an entry existed")


class CacheClearResponse(BaseModel):
    removed: int = Field(description="Number of entries dropped")


class RateLimitResetResponse(BaseModel):
    """Result of resetting one client's window."""

    identity: str = Field(description="Client identity, e.g. ip:203.0.113.7")
    removed: bool = Field(description="Whether a window existed")


class CacheStatsResponse(BaseModel):
    """How computation cache lookups have been served since startup."""

    hits: int = Field(description="Served from the store")
    misses: int = Field(description="Started a computation")
    joins: int = Field(description="Joined an in-flight computation")
    failures: int = Field(description="Producer invocations that failed")
    bypasses: int = Field(description="Served without the store while it was down")
    in_flight: int = Field(description="Keys currently being computed")


class PurgeResponse(BaseModel):
    cache_entries: int = Field(description="Expired cache entries removed")
    rate_windows: int = Field(description="Ended rate windows removed")
