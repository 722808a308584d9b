"""Subject schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SubjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    assignee_id: str | None = None


class SubjectAssignRequest(BaseModel):
    assignee_id: str = Field(min_length=1)


class SubjectStatusUpdate(BaseModel):
    status: str = Field(..., pattern="^(active|inactive)$")


class SubjectResponse(BaseModel):
    id: str
    name: str = ""
    assignee_id: str | None = None
    status: str = "active"
    created_at: str | None = None
    updated_at: str | None = None
