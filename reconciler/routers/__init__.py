from fastapi import APIRouter

from reconciler.routers import events

api_router = APIRouter()
api_router.include_router(events.router)

__all__ = ["api_router"]
