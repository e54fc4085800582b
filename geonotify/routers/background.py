"""Background processing router: ticker status and manual ticks."""
from fastapi import APIRouter, Depends
from typing import Dict, Any

from geonotify.services.engine import GeofenceEngine
from geonotify.middleware.auth import get_current_user, CurrentUser
from geonotify.routers.deps import get_engine

router = APIRouter(prefix="/background", tags=["Background"])


@router.get("/status", response_model=Dict[str, Any])
def ticker_status(
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    return engine.ticker.status()


@router.post("/process", response_model=Dict[str, Any])
def run_tick(
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    """Run one housekeeping tick now; skipped if one is already running."""
    return engine.ticker.tick()
