"""Pytest fixtures."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carewatch.core.security import create_access_token
from carewatch.db.base import Base
from carewatch.db.session import get_store
from carewatch.main import app
from carewatch.models import Document  # noqa: F401 - register for create_all
from carewatch.services.document_store import DocumentStore, matches


class FakeSubscription:
    """One live query opened against FakeStore."""

    def __init__(self, store, collection, filters, on_snapshot, on_error):
        self.store = store
        self.collection = collection
        self.filters = tuple(filters)
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True

    @property
    def ids(self):
        """The 'in' values of this subscription, or None for an unfiltered one."""
        for flt in self.filters:
            if flt.op == "in":
                return list(flt.value)
        return None

    def emit(self, docs):
        """Deliver a snapshot, whether or not the subscription is still open (late callbacks)."""
        self.on_snapshot([dict(doc) for doc in docs])

    def emit_matching(self):
        self.emit([doc for doc in self.store.docs.get(self.collection, []) if matches(doc, self.filters)])

    def fail(self, exc):
        self.on_error(exc)

    def unsubscribe(self):
        if self.active:
            self.active = False
            self.store.unsubscribed.append(self)


class FakeStore:
    """Store double that records subscriptions and lets tests drive callbacks by hand."""

    def __init__(self, membership_limit=10):
        self.membership_limit = membership_limit
        self.subscriptions = []
        self.unsubscribed = []
        self.docs = {}
        self.fail_listen = None
        self.fail_query = None

    def listen(self, collection, filters, on_snapshot, on_error=None):
        if self.fail_listen is not None:
            raise self.fail_listen
        sub = FakeSubscription(self, collection, filters, on_snapshot, on_error)
        for flt in sub.filters:
            assert flt.op != "in" or len(flt.value) <= self.membership_limit
        self.subscriptions.append(sub)
        return sub.unsubscribe

    def query(self, collection, filters=()):
        if self.fail_query is not None:
            raise self.fail_query
        return [doc for doc in self.docs.get(collection, []) if matches(doc, tuple(filters))]

    @property
    def active(self):
        return [sub for sub in self.subscriptions if sub.active]


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return DocumentStore(session_factory, membership_limit=10)


@pytest.fixture
def client(store):
    """Test client with overridden store."""
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def auth_headers(actor_id="admin-1", name="Ada Admin", role="admin"):
    token = create_access_token(actor_id, name=name, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers():
    return auth_headers()


@pytest.fixture
def manager_headers():
    return auth_headers("cm-1", name="Casey Manager", role="caremanager")


@pytest.fixture
def family_headers():
    return auth_headers("fam-1", name="Frances Family", role="family")
