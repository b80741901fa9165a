"""
API routers for the Insight API.
"""

from .funnels import router as funnels_router
from .insights import router as insights_router

__all__ = ["funnels_router", "insights_router"]
