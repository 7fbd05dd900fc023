# ═══════════════════════════════════════════════════════════════
# HarborList Billing - API Module
# FastAPI application and routes
# ═══════════════════════════════════════════════════════════════

from .main import app, create_app
from .billing_routes import router as billing_router

__all__ = [
    "app",
    "create_app",
    "billing_router",
]
