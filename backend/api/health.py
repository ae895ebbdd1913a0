"""
Health check endpoints for the Evacuation Roster Console.
"""

from datetime import datetime, timezone
from typing import Dict, Any

from fastapi import APIRouter, Depends
import structlog

from api.roster_views import get_view_registry
from core.config import get_settings, Settings
from services.error_handler import get_error_handler
from services.roster_view import RosterViewRegistry

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    """
    Health check endpoint (liveness).
    Returns basic service health status.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "Evacuation Roster Console",
        "version": "1.0.0"
    }


@router.get("/ready")
async def readiness_check(
    settings: Settings = Depends(get_settings),
    registry: RosterViewRegistry = Depends(get_view_registry)
) -> Dict[str, Any]:
    """
    Readiness check endpoint.
    Reports the configured collaborators and the number of open views.
    """
    checks = {
        "evacuee_api": {"status": "configured", "details": settings.EVAC_API_BASE_URL},
        "change_stream": (
            {"status": "configured", "details": settings.REALTIME_URL}
            if settings.REALTIME_URL
            else {"status": "disabled", "details": "Views refresh on demand only"}
        ),
        "views": {"status": "ready", "open": len(registry)},
    }
    return {
        "status": "ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "errors": get_error_handler("roster_views").get_error_statistics()
    }
