"""Alert lifecycle service.

States: ``active -> resolved`` and ``active -> closed``. ``forward`` is an
escalation that records the target and bumps ``forward_count`` without touching
the status. Every transition is one single-document update guarded by a
compare-and-set on ``status == active``, and appends one entry to the alert's
``history`` list in the same write.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from carewatch.core.alert_policies import (
    ACTION_CLOSED_FALSE_ALERT,
    ACTION_FORWARDED,
    ACTION_RAISED,
    ACTION_RESOLVED,
    ALERT_STATUSES,
    ALERT_TYPE_ALIASES,
    ALERT_TYPES,
    SEVERITIES,
    STATUS_ACTIVE,
    STATUS_CLOSED,
    STATUS_RESOLVED,
    TERMINAL_STATUSES,
)
from carewatch.core.config import settings
from carewatch.schemas.actor import Actor
from carewatch.services.aggregator import MergedView
from carewatch.services.document_store import ArrayAppend, DocumentNotFound, DocumentStore, Increment, PreconditionFailed
from carewatch.services.subject_service import SubjectNotFound, get_subject

logger = logging.getLogger(__name__)


class AlertNotFound(ValueError):
    """Raised when an alert id does not exist."""


class InvalidTransition(ValueError):
    """Raised when a transition's precondition (status == active) does not hold."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_alert_type(alert_type: str) -> str:
    """Map legacy names and unknown values onto the supported alert types."""
    value = (alert_type or "").strip().lower()
    value = ALERT_TYPE_ALIASES.get(value, value)
    return value if value in ALERT_TYPES else "other"


def _created_at(alert: dict) -> str:
    return alert.get("created_at") or ""


def get_alert(store: DocumentStore, alert_id: str) -> dict:
    alert = store.get(settings.alerts_collection, alert_id)
    if alert is None:
        raise AlertNotFound("Alert not found")
    return alert


def raise_alert(
    store: DocumentStore,
    subject_id: str,
    alert_type: str,
    severity: str = "high",
    message: str | None = None,
) -> dict:
    """Record a detection event as a new active alert."""
    subject = get_subject(store, subject_id)
    if subject is None:
        raise SubjectNotFound("Subject not found")
    if severity not in SEVERITIES:
        raise ValueError(f"Invalid severity: {severity}")

    now = _now()
    alert = store.add(
        settings.alerts_collection,
        {
            settings.alert_match_field: subject_id,
            "subject_name": subject.get("name", ""),
            "type": normalize_alert_type(alert_type),
            "severity": severity,
            "status": STATUS_ACTIVE,
            "message": message,
            "created_at": now,
            "resolved_at": None,
            "resolved_by": None,
            "resolver_name": None,
            "resolver_role": None,
            "resolution_note": None,
            "action_taken": None,
            "forwarded_to": None,
            "forwarded_by": None,
            "forwarded_at": None,
            "forward_count": 0,
            "history": [{"action": ACTION_RAISED, "at": now}],
        },
    )
    logger.info("Alert %s raised for subject %s (%s)", alert["id"], subject_id, alert["type"])
    return alert


def _transition(store: DocumentStore, alert_id: str, fields: dict, entry: dict) -> dict:
    try:
        return store.update(
            settings.alerts_collection,
            alert_id,
            {**fields, "history": ArrayAppend((entry,))},
            expect={"status": STATUS_ACTIVE},
        )
    except DocumentNotFound as exc:
        raise AlertNotFound("Alert not found") from exc
    except PreconditionFailed as exc:
        current = (store.get(settings.alerts_collection, alert_id) or {}).get("status")
        if current in TERMINAL_STATUSES:
            raise InvalidTransition(f"Alert already {current}") from exc
        raise InvalidTransition(f"Cannot {entry['action']} alert with status {current}") from exc


def resolve_alert(store: DocumentStore, alert_id: str, actor: Actor, note: str | None = None) -> dict:
    """Resolve an active alert. ``note`` is stored exactly as given, None included."""
    now = _now()
    alert = _transition(
        store,
        alert_id,
        {
            "status": STATUS_RESOLVED,
            "resolved_at": now,
            "resolved_by": actor.id,
            "resolver_name": actor.name,
            "resolver_role": actor.role,
            "resolution_note": note,
            "action_taken": ACTION_RESOLVED,
        },
        {"action": ACTION_RESOLVED, "actor_id": actor.id, "actor_role": actor.role, "at": now, "note": note},
    )
    logger.info("Alert %s resolved by %s (%s)", alert_id, actor.id, actor.role)
    return alert


def close_alert(store: DocumentStore, alert_id: str, actor: Actor) -> dict:
    """Close an active alert as a false alert. The resolution note is left untouched."""
    now = _now()
    alert = _transition(
        store,
        alert_id,
        {
            "status": STATUS_CLOSED,
            "resolved_at": now,
            "resolved_by": actor.id,
            "resolver_name": actor.name,
            "resolver_role": actor.role,
            "action_taken": ACTION_CLOSED_FALSE_ALERT,
        },
        {"action": ACTION_CLOSED_FALSE_ALERT, "actor_id": actor.id, "actor_role": actor.role, "at": now},
    )
    logger.info("Alert %s closed as false alert by %s (%s)", alert_id, actor.id, actor.role)
    return alert


def forward_alert(store: DocumentStore, alert_id: str, target_id: str, actor: Actor) -> dict:
    """Escalate an active alert to another care manager. Status stays active."""
    if not target_id:
        raise ValueError("target_id is required")
    now = _now()
    alert = _transition(
        store,
        alert_id,
        {
            "forwarded_to": target_id,
            "forwarded_by": actor.id,
            "forwarded_at": now,
            "forward_count": Increment(1),
        },
        {"action": ACTION_FORWARDED, "actor_id": actor.id, "actor_role": actor.role, "at": now, "target": target_id},
    )
    logger.info("Alert %s forwarded to %s by %s (count=%s)", alert_id, target_id, actor.id, alert["forward_count"])
    return alert


# ---------- Derived queries ----------


def active_alerts(view: MergedView) -> list[dict]:
    """Active alerts in the view's scope, newest first. Missing status counts as active."""
    return [
        alert
        for alert in view.documents(sort_key=_created_at, reverse=True)
        if (alert.get("status") or STATUS_ACTIVE) == STATUS_ACTIVE
    ]


def filter_alerts(alerts: Iterable[dict], status: str | None = None, search: str | None = None) -> list[dict]:
    """Console filters: status ('all' or one status) and free-text search on subject name or type."""
    if status and status != "all" and status not in ALERT_STATUSES:
        raise ValueError(f"Invalid status filter: {status}")
    needle = (search or "").strip().lower()
    result = []
    for alert in alerts:
        if status and status != "all" and (alert.get("status") or STATUS_ACTIVE) != status:
            continue
        if needle and needle not in (alert.get("subject_name") or "").lower() and needle not in (
            alert.get("type") or ""
        ).lower():
            continue
        result.append(alert)
    return sorted(result, key=_created_at, reverse=True)


def alert_stats(alerts: Iterable[dict], recent_limit: int | None = None) -> dict:
    """Counts per status plus the most recent active alerts (dashboard)."""
    alerts = list(alerts)
    counts = {s: 0 for s in ALERT_STATUSES}
    for alert in alerts:
        status = alert.get("status") or STATUS_ACTIVE
        counts[status] = counts.get(status, 0) + 1
    recent = filter_alerts(alerts, status=STATUS_ACTIVE)[: recent_limit or settings.recent_alerts_limit]
    return {"total": len(alerts), **counts, "recent_active": recent}
