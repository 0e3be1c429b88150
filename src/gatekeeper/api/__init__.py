"""
API endpoints package.

Contains FastAPI routers for all service endpoints:
- /v1/market/*, /v1/news - Cached upstream data
- /v1/admin/* - Cache invalidation and rate-limit resets
- /metrics - Prometheus metrics
- /healthz, /readyz - Health checks
"""
from .admin import router as admin_router
from .healthz import router as healthz_router
from .market import router as market_router
from .metrics import router as metrics_router

__all__ = ["admin_router", "healthz_router", "market_router", "metrics_router"]
