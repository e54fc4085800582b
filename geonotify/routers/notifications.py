"""Notification router: actions, bundling, scheduled deliveries and history."""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from typing import Dict, Any, Optional

from geonotify.schemas.notifications import NotificationActionRequest, BundleRequest
from geonotify.services.engine import GeofenceEngine
from geonotify.middleware.auth import get_current_user, CurrentUser
from geonotify.routers.deps import get_engine

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.post("/{notification_id}/action", response_model=Dict[str, Any])
def notification_action(
    notification_id: str,
    body: NotificationActionRequest,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    """Handle a tap on a notification action button."""
    return engine.handle_action(current_user.user_id, notification_id, body.action)


@router.post("/bundle", response_model=Dict[str, Any])
def bundle_notifications(
    body: BundleRequest,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    """Group the caller's notifications into location bundles (no side effects)."""
    bundles = engine.bundle_for_user(current_user.user_id, list(body.notifications))
    return {
        "bundles": [b.model_dump(mode="json") for b in bundles],
        "count": len(bundles),
    }


@router.get("/scheduled", response_model=Dict[str, Any])
def list_scheduled(
    status_filter: Optional[str] = Query(
        None, alias="status", pattern=r"^(pending|delivered|failed|cancelled)$"
    ),
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    entries = engine.scheduler.get_scheduled_notifications(current_user.user_id, status_filter)
    return {
        "notifications": [e.to_dict() for e in entries],
        "count": len(entries),
    }


@router.delete("/scheduled/{scheduled_id}", response_model=Dict[str, bool])
def cancel_scheduled(
    scheduled_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    """Cancel a pending scheduled notification. In-flight or finished ones cannot be cancelled."""
    if engine.scheduler.get(scheduled_id, current_user.user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Scheduled notification not found"
        )
    if not engine.scheduler.cancel_notification(scheduled_id, current_user.user_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Notification is being delivered or already finished"
        )
    return {"cancelled": True}


@router.get("/stats", response_model=Dict[str, Any])
def notification_stats(
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    return {
        "scheduled": engine.scheduler.get_stats(current_user.user_id),
        "history": engine.history.counts_by_status(current_user.user_id),
    }


@router.get("/summary", response_model=Dict[str, Any])
def notification_summary(
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    return engine.suppression.get_summary(current_user.user_id)


@router.get("/history", response_model=Dict[str, Any])
def notification_history(
    status_filter: Optional[str] = Query(None, alias="status"),
    task_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    rows = engine.history.list_for_user(current_user.user_id, status_filter, task_id, limit)
    return {
        "notifications": [row.model_dump(mode="json") for row in rows],
        "count": len(rows),
    }
