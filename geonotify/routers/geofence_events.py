"""Geofence event router: event intake, offline sync and the retry queue."""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from typing import Dict, Any

from geonotify.schemas.events import EventBatchRequest
from geonotify.services.engine import GeofenceEngine
from geonotify.middleware.auth import get_current_user, CurrentUser
from geonotify.routers.deps import get_engine

router = APIRouter(prefix="/geofences/events", tags=["Geofence Events"])


@router.post("", response_model=Dict[str, Any])
def submit_events(
    body: EventBatchRequest,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    """Process geofence events now; transient failures go to the retry queue."""
    return engine.submit_events(current_user.user_id, list(body.events))


@router.post("/sync", response_model=Dict[str, int])
def sync_offline_events(
    body: EventBatchRequest,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    """Replay events the device stored while offline."""
    return engine.sync_offline_events(current_user.user_id, list(body.events))


@router.get("/queue", response_model=Dict[str, Any])
def get_queue(
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    """Queued events of the authenticated user."""
    events = engine.queue.get_queued_events_for_user(current_user.user_id)
    return {
        "events": [e.to_dict() for e in events],
        "stats": engine.queue.get_queue_stats(current_user.user_id),
    }


@router.delete("/queue/{queue_id}", response_model=Dict[str, bool])
def remove_queued_event(
    queue_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    if not engine.queue.remove_from_queue(queue_id, current_user.user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Queued event not found or currently processing"
        )
    return {"removed": True}


@router.get("/stats", response_model=Dict[str, Any])
def get_event_stats(
    days: int = Query(7, ge=1, le=365, description="Look-back window in days"),
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    stats = engine.processor.get_processing_stats(current_user.user_id, days)
    stats["queue"] = engine.queue.get_queue_stats(current_user.user_id)
    return stats


@router.post("/retry/{queue_id}", response_model=bool)
def retry_event(
    queue_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    """Manually re-drive a queued (or failed) event."""
    if not engine.queue.retry_event(queue_id, current_user.user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Queued event not found"
        )
    engine.deliver_pending(current_user.user_id)
    return True
