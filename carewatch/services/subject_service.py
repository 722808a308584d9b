"""Subject and assignment administration service."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from carewatch.core.alert_policies import SUBJECT_STATUSES
from carewatch.core.config import settings
from carewatch.services.aggregator import fetch_in_scope
from carewatch.services.document_store import DocumentNotFound, DocumentStore
from carewatch.services.membership import Scope

logger = logging.getLogger(__name__)


class SubjectNotFound(ValueError):
    """Raised when a subject id does not exist."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_subject(store: DocumentStore, subject_id: str) -> dict | None:
    """Get subject by id."""
    return store.get(settings.subjects_collection, subject_id)


def register_subject(store: DocumentStore, name: str, assignee_id: str | None = None) -> dict:
    """Create a monitored subject, optionally already assigned."""
    now = _now()
    subject = store.add(
        settings.subjects_collection,
        {
            "name": name,
            settings.assignment_field: assignee_id or None,
            "status": "active",
            "created_at": now,
            "updated_at": now,
        },
    )
    logger.info("Subject %s registered (assignee=%s)", subject["id"], assignee_id)
    return subject


def _update_subject(store: DocumentStore, subject_id: str, fields: dict) -> dict:
    try:
        return store.update(settings.subjects_collection, subject_id, {**fields, "updated_at": _now()})
    except DocumentNotFound as exc:
        raise SubjectNotFound("Subject not found") from exc


def assign_subject(store: DocumentStore, subject_id: str, assignee_id: str) -> dict:
    """Assign a subject to a care manager. Replaces any previous assignment."""
    if not assignee_id:
        raise ValueError("assignee_id is required; use unassign_subject to clear it")
    subject = _update_subject(store, subject_id, {settings.assignment_field: assignee_id})
    logger.info("Subject %s assigned to %s", subject_id, assignee_id)
    return subject


def unassign_subject(store: DocumentStore, subject_id: str) -> dict:
    """Clear a subject's assignment."""
    subject = _update_subject(store, subject_id, {settings.assignment_field: None})
    logger.info("Subject %s unassigned", subject_id)
    return subject


def set_subject_status(store: DocumentStore, subject_id: str, status: str) -> dict:
    """Activate or deactivate a subject."""
    if status not in SUBJECT_STATUSES:
        raise ValueError(f"Invalid subject status: {status}")
    return _update_subject(store, subject_id, {"status": status})


def list_subjects(store: DocumentStore, scope: Scope) -> list[dict]:
    """One-shot list of subjects in ``scope``, by name."""
    subjects = fetch_in_scope(store, scope, settings.subjects_collection, "id")
    return sorted(subjects, key=lambda s: (s.get("name") or "").lower())
