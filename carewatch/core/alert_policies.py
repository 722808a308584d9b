"""Alert lifecycle policy constants."""

from __future__ import annotations

STATUS_ACTIVE = "active"
STATUS_RESOLVED = "resolved"
STATUS_CLOSED = "closed"

ALERT_STATUSES = (STATUS_ACTIVE, STATUS_RESOLVED, STATUS_CLOSED)

# End states: no transition leaves them, and they carry resolver attribution
TERMINAL_STATUSES = (STATUS_RESOLVED, STATUS_CLOSED)

ALERT_TYPES = ("panic", "missed_checkin", "medication", "fall", "other")

# Legacy type names still emitted by older devices
ALERT_TYPE_ALIASES = {
    "panic_button": "panic",
    "fall_detected": "fall",
}

SEVERITIES = ("critical", "high", "medium", "low")

ACTION_RESOLVED = "resolved"
ACTION_CLOSED_FALSE_ALERT = "closed_false_alert"
ACTION_FORWARDED = "forwarded"
ACTION_RAISED = "raised"

# Roles allowed to act on alerts and assignments
STAFF_ROLES = ("admin", "caremanager")
ACTOR_ROLES = ("admin", "caremanager", "family")

SUBJECT_STATUSES = ("active", "inactive")
