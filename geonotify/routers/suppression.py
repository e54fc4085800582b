"""Snooze, mute and preference router."""
from fastapi import APIRouter, Depends, Query
from typing import Dict, Any

from geonotify.schemas.suppression import (
    SnoozeCreate, SnoozeExtend, MuteCreate, MuteExtend, PreferencesUpdate,
)
from geonotify.services.engine import GeofenceEngine
from geonotify.middleware.auth import get_current_user, CurrentUser
from geonotify.routers.deps import get_engine

router = APIRouter(prefix="/notifications", tags=["Snoozes & Mutes"])


# --- Snoozes ---

@router.get("/snoozes", response_model=Dict[str, Any])
def list_snoozes(
    active_only: bool = Query(True),
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    snoozes = engine.suppression.list_snoozes(current_user.user_id, active_only)
    return {"snoozes": snoozes, "count": len(snoozes)}


@router.post("/snoozes", response_model=Dict[str, Any])
def create_snooze(
    body: SnoozeCreate,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    """Snooze every notification of a task."""
    result = engine.suppression.snooze_task_notifications(
        current_user.user_id, body.task_id, body.duration, body.reason
    )
    return {
        "snooze": result.snooze,
        "extended": result.extended,
        "snoozed_count": len(result.snoozed_notifications),
    }


@router.post("/snoozes/{snooze_id}/cancel", response_model=Dict[str, Any])
def cancel_snooze(
    snooze_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    return {"snooze": engine.suppression.cancel_snooze(current_user.user_id, snooze_id)}


@router.post("/snoozes/{snooze_id}/extend", response_model=Dict[str, Any])
def extend_snooze(
    snooze_id: str,
    body: SnoozeExtend,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    return {"snooze": engine.suppression.extend_snooze(current_user.user_id, snooze_id, body.duration)}


@router.post("/tasks/{task_id}/cancel-snoozes", response_model=Dict[str, int])
def cancel_task_snoozes(
    task_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    cancelled = engine.suppression.cancel_task_snoozes(current_user.user_id, task_id)
    return {"cancelled": cancelled}


# --- Mutes ---

@router.get("/mutes", response_model=Dict[str, Any])
def list_mutes(
    active_only: bool = Query(True),
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    mutes = engine.suppression.list_mutes(current_user.user_id, active_only)
    return {"mutes": mutes, "count": len(mutes)}


@router.post("/mutes", response_model=Dict[str, Any])
def create_mute(
    body: MuteCreate,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    """Mute a task; replaces the task's current mute."""
    result = engine.suppression.mute_task(current_user.user_id, body.task_id, body.duration, body.reason)
    return {
        "mute": result.mute,
        "superseded": result.superseded,
        "cancelled_count": len(result.cancelled_notifications),
    }


@router.post("/mutes/{mute_id}/cancel", response_model=Dict[str, Any])
def cancel_mute(
    mute_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    return {"mute": engine.suppression.cancel_mute(current_user.user_id, mute_id)}


@router.post("/mutes/{mute_id}/extend", response_model=Dict[str, Any])
def extend_mute(
    mute_id: str,
    body: MuteExtend,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    return {"mute": engine.suppression.extend_mute(current_user.user_id, mute_id, body.duration)}


@router.post("/tasks/{task_id}/unmute", response_model=Dict[str, int])
def unmute_task(
    task_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    unmuted = engine.suppression.unmute_task(current_user.user_id, task_id)
    engine.deliver_pending(current_user.user_id)
    return {"unmuted": unmuted}


# --- Preferences ---

@router.get("/preferences")
def get_preferences(
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    return engine.suppression.get_preferences(current_user.user_id)


@router.put("/preferences")
def update_preferences(
    body: PreferencesUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    engine: GeofenceEngine = Depends(get_engine),
):
    updates = body.model_dump(exclude_unset=True)
    return engine.suppression.update_preferences(current_user.user_id, updates)
