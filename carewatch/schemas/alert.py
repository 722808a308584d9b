"""Alert schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class AlertCreate(BaseModel):
    """Detection event raised by a device or check-in monitor."""

    subject_id: str = Field(min_length=1)
    type: str = Field(min_length=1, description="panic | missed_checkin | medication | fall | other")
    severity: str = Field(default="high", pattern="^(critical|high|medium|low)$")
    message: str | None = None


class AlertResolveRequest(BaseModel):
    note: str | None = Field(default=None, description="Stored verbatim, including null")


class AlertForwardRequest(BaseModel):
    target_id: str = Field(min_length=1, description="Care manager the alert is escalated to")


class AlertResponse(BaseModel):
    id: str
    subject_id: str
    subject_name: str = ""
    type: str
    severity: str
    status: str
    message: str | None = None
    created_at: str | None = None
    resolved_at: str | None = None
    resolved_by: str | None = None
    resolver_name: str | None = None
    resolver_role: str | None = None
    resolution_note: str | None = None
    action_taken: str | None = None
    forwarded_to: str | None = None
    forwarded_by: str | None = None
    forwarded_at: str | None = None
    forward_count: int = 0
    history: list[dict[str, Any]] = []


class AlertStatsResponse(BaseModel):
    total: int
    active: int
    resolved: int
    closed: int
    recent_active: list[AlertResponse] = []
