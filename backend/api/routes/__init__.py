"""API route registration for HomeFlow."""

from fastapi import APIRouter

from . import events, modes, rules

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(rules.router, prefix="/rules", tags=["rules"])
api_router.include_router(modes.router, prefix="/modes", tags=["modes"])
api_router.include_router(events.router, prefix="/events", tags=["events"])


__all__ = [
    "api_router",
    "events",
    "modes",
    "rules",
]
