"""API routers for the paysettle backend."""
from fastapi import APIRouter

from . import health, webhooks


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(webhooks.router)
    return api_router
