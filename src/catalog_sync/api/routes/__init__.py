"""API route registration."""

from fastapi import APIRouter

from .sync import router as sync_router

api_router = APIRouter()

api_router.include_router(sync_router, prefix="/sync", tags=["sync"])

__all__ = ["api_router"]
