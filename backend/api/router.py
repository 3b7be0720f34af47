"""Aggregated router.

Public probes sit at the root; everything that needs a credential lives
under /api so that it falls into the ``api`` rate limit class.
"""

from fastapi import APIRouter

from api.routes import api_keys, auth, health, metrics, speedtest

api_router = APIRouter()

# Public (no auth required)
api_router.include_router(health.router)
api_router.include_router(metrics.router)

# Authentication
api_router.include_router(
    auth.router,
    prefix="/auth",
    tags=["Authentication"],
)

# Results and manual trigger
api_router.include_router(
    speedtest.router,
    prefix="/api",
    tags=["Speed Tests"],
)

# API key management
api_router.include_router(
    api_keys.router,
    prefix="/api/keys",
    tags=["API Keys"],
)
