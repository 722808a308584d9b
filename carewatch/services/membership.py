"""Membership resolution: which subject ids a view cares about.

A scope is one of ``all``, ``assignee(<id>)`` or ``unassigned``. Resolving it
yields a live :class:`MembershipHandle` that re-emits a :class:`MembershipSet`
whenever the assignment relationship changes.

``MembershipSet.ids is None`` is the unfiltered sentinel ("no restriction").
An empty frozenset means "filtered to nothing". Resolution errors produce an
empty set with ``error`` set, never the sentinel.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from carewatch.core.config import settings
from carewatch.services.document_store import DocumentStore, where

logger = logging.getLogger(__name__)

SCOPE_ALL = "all"
SCOPE_UNASSIGNED = "unassigned"
SCOPE_ASSIGNEE = "assignee"


@dataclass(frozen=True)
class Scope:
    """Logical filter driving which subjects are in view."""

    kind: str
    assignee_id: str | None = None

    @classmethod
    def all(cls) -> "Scope":
        return cls(SCOPE_ALL)

    @classmethod
    def unassigned(cls) -> "Scope":
        return cls(SCOPE_UNASSIGNED)

    @classmethod
    def assignee(cls, assignee_id: str) -> "Scope":
        if not assignee_id:
            raise ValueError("assignee scope needs an assignee id")
        return cls(SCOPE_ASSIGNEE, assignee_id)

    @classmethod
    def parse(cls, value: str | None) -> "Scope":
        """Parse the selector used by the console: 'all', 'unassigned' or an assignee id."""
        if value is not None and not isinstance(value, str):
            raise ValueError("scope must be a string")
        if value is None or value == "" or value == SCOPE_ALL:
            return cls.all()
        if value == SCOPE_UNASSIGNED:
            return cls.unassigned()
        return cls.assignee(value)

    def __str__(self) -> str:
        return self.assignee_id if self.kind == SCOPE_ASSIGNEE else self.kind


@dataclass(frozen=True)
class MembershipSet:
    """Subject ids in scope. ``ids is None`` means unfiltered."""

    ids: frozenset[str] | None
    error: Exception | None = None

    @property
    def is_unfiltered(self) -> bool:
        return self.ids is None

    @property
    def ordered(self) -> list[str]:
        """Ids in a stable order, for chunking."""
        return sorted(self.ids) if self.ids is not None else []


UNFILTERED = MembershipSet(ids=None)


class ScopeUnavailable(RuntimeError):
    """Raised by one-shot reads when a scope cannot be resolved."""


def is_unassigned(subject: dict, field: str | None = None) -> bool:
    """A subject is unassigned when its assignee is missing, None or empty."""
    return not subject.get(field or settings.assignment_field)


class MembershipHandle:
    """Live id-set handle returned by :meth:`MembershipResolver.resolve`."""

    def __init__(self, scope: Scope) -> None:
        self.scope = scope
        self.current: MembershipSet | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the underlying live query. Safe to call twice."""
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


class MembershipResolver:
    """Turns a scope into a live set of subject ids."""

    def __init__(
        self,
        store: DocumentStore,
        collection: str | None = None,
        assignment_field: str | None = None,
    ) -> None:
        self.store = store
        self.collection = collection or settings.subjects_collection
        self.assignment_field = assignment_field or settings.assignment_field

    def resolve(
        self,
        scope: Scope,
        on_change: Callable[[MembershipSet], None],
        on_error: Callable[[Exception], None] | None = None,
    ) -> MembershipHandle:
        """Start resolving ``scope``; ``on_change`` receives every new id set."""
        handle = MembershipHandle(scope)

        def emit(members: MembershipSet) -> None:
            if handle.closed:
                return
            # Subject edits that keep the id set (name, status) are not membership changes
            if handle.current is not None and handle.current == members:
                return
            handle.current = members
            on_change(members)

        def fail(exc: Exception) -> None:
            logger.warning("Membership resolution for scope %s failed: %s", scope, exc)
            if on_error is not None and not handle.closed:
                on_error(exc)
            emit(MembershipSet(ids=frozenset(), error=exc))

        if scope.kind == SCOPE_ALL:
            emit(UNFILTERED)
            return handle

        if scope.kind == SCOPE_ASSIGNEE:
            filters = [where(self.assignment_field, "==", scope.assignee_id)]

            def on_snapshot(docs: list[dict]) -> None:
                emit(MembershipSet(ids=frozenset(doc["id"] for doc in docs)))

        elif scope.kind == SCOPE_UNASSIGNED:
            # Full scan: the store cannot query for a missing field.
            filters = []

            def on_snapshot(docs: list[dict]) -> None:
                emit(
                    MembershipSet(
                        ids=frozenset(doc["id"] for doc in docs if is_unassigned(doc, self.assignment_field))
                    )
                )

        else:
            raise ValueError(f"Unknown scope kind: {scope.kind}")

        try:
            handle._unsubscribe = self.store.listen(self.collection, filters, on_snapshot, fail)
        except (SQLAlchemyError, ValueError) as exc:
            fail(exc)
        return handle

    def snapshot(self, scope: Scope) -> MembershipSet:
        """One-shot resolution of ``scope``."""
        if scope.kind == SCOPE_ALL:
            return UNFILTERED
        try:
            if scope.kind == SCOPE_ASSIGNEE:
                docs = self.store.query(self.collection, [where(self.assignment_field, "==", scope.assignee_id)])
                return MembershipSet(ids=frozenset(doc["id"] for doc in docs))
            docs = self.store.query(self.collection)
        except (SQLAlchemyError, ValueError) as exc:
            logger.warning("Membership resolution for scope %s failed: %s", scope, exc)
            return MembershipSet(ids=frozenset(), error=exc)
        return MembershipSet(ids=frozenset(doc["id"] for doc in docs if is_unassigned(doc, self.assignment_field)))
