"""
API Routers
===========
FastAPI routers for the Laburandik seller-ops backend.
"""

from .analytics import router as analytics_router
from .auth import router as auth_router
from .catalog import router as catalog_router
from .cogs import router as cogs_router
from .meli import router as meli_router
from .organizations import onboarding_router, router as organization_router
from .packing import router as packing_router

__all__ = [
    "analytics_router",
    "auth_router",
    "catalog_router",
    "cogs_router",
    "meli_router",
    "onboarding_router",
    "organization_router",
    "packing_router",
]
