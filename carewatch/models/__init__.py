"""SQLAlchemy models."""

from __future__ import annotations

from carewatch.models.document import Document

__all__ = [
    "Document",
]
