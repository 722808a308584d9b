"""Database session management."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from carewatch.core.config import settings
from carewatch.services.document_store import DocumentStore

connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    echo=settings.debug,
    connect_args=connect_args,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Shared live-query store; its listeners outlive individual requests.
document_store = DocumentStore(SessionLocal)


def get_store() -> DocumentStore:
    """Dependency for FastAPI to get the shared document store."""
    return document_store
