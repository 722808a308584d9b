"""Subjects and assignment API."""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from carewatch.core.deps import get_current_actor, require_staff
from carewatch.db.session import get_store
from carewatch.schemas.actor import Actor
from carewatch.schemas.subject import SubjectAssignRequest, SubjectCreate, SubjectResponse, SubjectStatusUpdate
from carewatch.services.document_store import DocumentStore
from carewatch.services.membership import Scope, ScopeUnavailable
from carewatch.services.subject_service import (
    SubjectNotFound,
    assign_subject,
    list_subjects,
    register_subject,
    set_subject_status,
    unassign_subject,
)

router = APIRouter(prefix="/subjects", tags=["subjects"])


@router.get("", response_model=list[SubjectResponse])
def list_in_scope(
    scope: str = Query(default="all", description="'all', 'unassigned' or an assignee id"),
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(get_current_actor),
):
    """List subjects in a scope, by name."""
    try:
        return list_subjects(store, Scope.parse(scope))
    except ScopeUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("", response_model=SubjectResponse)
def create(
    data: SubjectCreate,
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(require_staff),
):
    """Register a monitored subject."""
    return register_subject(store, data.name, data.assignee_id)


@router.post("/{subject_id}/assign", response_model=SubjectResponse)
def assign(
    subject_id: str,
    data: SubjectAssignRequest,
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(require_staff),
):
    """Assign the subject to a care manager."""
    try:
        return assign_subject(store, subject_id, data.assignee_id)
    except SubjectNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/{subject_id}/unassign", response_model=SubjectResponse)
def unassign(
    subject_id: str,
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(require_staff),
):
    """Clear the subject's care manager."""
    try:
        return unassign_subject(store, subject_id)
    except SubjectNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/{subject_id}/status", response_model=SubjectResponse)
def update_status(
    subject_id: str,
    data: SubjectStatusUpdate,
    store: DocumentStore = Depends(get_store),
    current_actor: Actor = Depends(require_staff),
):
    """Activate or deactivate the subject."""
    try:
        return set_subject_status(store, subject_id, data.status)
    except SubjectNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
