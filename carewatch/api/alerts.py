"""Alerts API."""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query, status

from carewatch.core.config import settings
from carewatch.core.deps import get_current_actor, require_staff
from carewatch.core.ws_manager import ws_manager
from carewatch.db.session import get_store
from carewatch.schemas.actor import Actor
from carewatch.schemas.alert import (
    AlertCreate,
    AlertForwardRequest,
    AlertResolveRequest,
    AlertResponse,
    AlertStatsResponse,
)
from carewatch.services.aggregator import fetch_in_scope
from carewatch.services.alert_service import (
    AlertNotFound,
    InvalidTransition,
    alert_stats,
    close_alert,
    filter_alerts,
    forward_alert,
    get_alert,
    raise_alert,
    resolve_alert,
)
from carewatch.services.document_store import DocumentStore
from carewatch.services.membership import Scope, ScopeUnavailable
from carewatch.services.subject_service import SubjectNotFound

router = APIRouter(prefix="/alerts", tags=["alerts"])


def _alerts_in_scope(store: DocumentStore, scope: str) -> list[dict]:
    try:
        return fetch_in_scope(store, Scope.parse(scope), settings.alerts_collection, settings.alert_match_field)
    except ScopeUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


def _transition_error(e: ValueError) -> HTTPException:
    if isinstance(e, AlertNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, InvalidTransition):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("", response_model=list[AlertResponse])
def list_alerts(
    scope: str = Query(default="all", description="'all', 'unassigned' or an assignee id"),
    status_filter: str = Query(default="all", alias="status"),
    search: str | None = Query(default=None),
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(get_current_actor),
):
    """Alerts for subjects in scope, newest first, with console filters."""
    try:
        return filter_alerts(_alerts_in_scope(store, scope), status=status_filter, search=search)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/stats", response_model=AlertStatsResponse)
def stats(
    scope: str = Query(default="all"),
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(get_current_actor),
):
    """Dashboard counters for the scope."""
    return alert_stats(_alerts_in_scope(store, scope))


@router.post("", response_model=AlertResponse)
def create(
    data: AlertCreate,
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(get_current_actor),
):
    """Ingest a detection event as a new active alert."""
    try:
        return raise_alert(store, data.subject_id, data.type, data.severity, data.message)
    except SubjectNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/{alert_id}", response_model=AlertResponse)
def get_one(
    alert_id: str,
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(get_current_actor),
):
    """Get one alert with its audit history."""
    try:
        return get_alert(store, alert_id)
    except AlertNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/{alert_id}/resolve", response_model=AlertResponse)
def resolve(
    alert_id: str,
    data: AlertResolveRequest | None = Body(default=None),
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(require_staff),
):
    """Resolve an active alert with an optional note."""
    note = data.note if data else None
    try:
        return resolve_alert(store, alert_id, current_actor, note)
    except ValueError as e:
        raise _transition_error(e)


@router.post("/{alert_id}/close", response_model=AlertResponse)
def close(
    alert_id: str,
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(require_staff),
):
    """Close an active alert as a false alert."""
    try:
        return close_alert(store, alert_id, current_actor)
    except ValueError as e:
        raise _transition_error(e)


@router.post("/{alert_id}/forward", response_model=AlertResponse)
def forward(
    alert_id: str,
    data: AlertForwardRequest,
    background_tasks: BackgroundTasks,
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(require_staff),
):
    """Escalate an active alert to another care manager; the alert stays active."""
    try:
        alert = forward_alert(store, alert_id, data.target_id, current_actor)
    except ValueError as e:
        raise _transition_error(e)
    background_tasks.add_task(
        ws_manager.send_to_actor,
        data.target_id,
        "alert.forwarded",
        {
            "alert_id": alert["id"],
            "subject_id": alert.get(settings.alert_match_field),
            "subject_name": alert.get("subject_name", ""),
            "type": alert.get("type"),
            "forwarded_by": current_actor.id,
            "forwarded_by_name": current_actor.name,
            "forward_count": alert.get("forward_count", 0),
        },
    )
    return alert
