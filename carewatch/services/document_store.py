"""Document store with live queries.

Documents are JSON objects kept in the ``documents`` table, one row per
(collection, id). On top of plain reads and writes the store offers live
queries: a listener registered with :meth:`DocumentStore.listen` receives the
full matching result set once on registration and again after every committed
write that changes it.

Two query predicates exist, the same pair the mobile and console clients'
hosted document database offers:

* ``where(field, "==", value)``
* ``where(field, "in", [v1, v2, ...])`` with at most ``membership_limit`` values

There is no "field is absent" predicate. Callers that need one fetch the
collection and filter locally.

Listeners registered from inside a running asyncio loop get their snapshots
scheduled on that loop; otherwise the snapshot is delivered synchronously on the
writer's call stack after commit.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Iterable, NamedTuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from carewatch.core.config import settings
from carewatch.models.document import Document

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[list[dict]], None]
ErrorCallback = Callable[[Exception], None]


class DocumentNotFound(ValueError):
    """Raised when a single-document write targets a missing document."""


class PreconditionFailed(ValueError):
    """Raised when a compare-and-set update finds unexpected field values."""


class QueryLimitError(ValueError):
    """Raised when a membership query lists more ids than the store allows."""


class FieldFilter(NamedTuple):
    field: str
    op: str
    value: Any


def where(field_name: str, op: str, value: Any) -> FieldFilter:
    """Build a query predicate. Supported ops: ``==`` and ``in``."""
    if op not in ("==", "in"):
        raise ValueError(f"Unsupported query operator: {op}")
    if op == "in":
        value = list(value)
    return FieldFilter(field_name, op, value)


class Increment(NamedTuple):
    """Field transform: add ``amount`` to the stored number (missing counts as 0)."""

    amount: int = 1


class ArrayAppend(NamedTuple):
    """Field transform: append ``items`` to the stored list (missing counts as [])."""

    items: tuple


def matches(doc: dict, filters: Iterable[FieldFilter]) -> bool:
    """True if ``doc`` satisfies every predicate."""
    for flt in filters:
        value = doc.get(flt.field)
        if flt.op == "==" and value != flt.value:
            return False
        if flt.op == "in" and value not in flt.value:
            return False
    return True


def _to_doc(row: Document) -> dict:
    return {"id": row.id, **(row.data or {})}


def _apply_fields(data: dict, fields: dict) -> dict:
    updated = dict(data)
    for key, value in fields.items():
        if isinstance(value, Increment):
            updated[key] = (updated.get(key) or 0) + value.amount
        elif isinstance(value, ArrayAppend):
            updated[key] = list(updated.get(key) or []) + list(value.items)
        else:
            updated[key] = value
    return updated


@dataclass
class _Listener:
    id: int
    collection: str
    filters: tuple[FieldFilter, ...]
    on_snapshot: SnapshotCallback
    on_error: ErrorCallback | None
    loop: asyncio.AbstractEventLoop | None
    last: list[dict] | None = None
    active: bool = True


class DocumentStore:
    """Live-query document store backed by a SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        membership_limit: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.membership_limit = membership_limit or settings.membership_query_limit
        self._lock = threading.RLock()
        self._listeners: dict[int, _Listener] = {}
        self._ids = itertools.count(1)

    # ---------- Reads ----------

    def _load(self, collection: str) -> list[dict]:
        db = self._session_factory()
        try:
            rows = db.execute(
                select(Document).where(Document.collection == collection).order_by(Document.id)
            ).scalars().all()
            return [_to_doc(row) for row in rows]
        finally:
            db.close()

    def query(self, collection: str, filters: Iterable[FieldFilter] = ()) -> list[dict]:
        """One-shot query."""
        filters = tuple(filters)
        self._check_filters(filters)
        return [doc for doc in self._load(collection) if matches(doc, filters)]

    def get(self, collection: str, doc_id: str) -> dict | None:
        """Fetch one document by id, or None."""
        db = self._session_factory()
        try:
            row = db.get(Document, (collection, doc_id))
            return _to_doc(row) if row else None
        finally:
            db.close()

    # ---------- Writes ----------

    def add(self, collection: str, data: dict) -> dict:
        """Create a document with a generated id."""
        return self.set(collection, uuid.uuid4().hex, data)

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> dict:
        """Create or replace a document. With ``merge`` the fields are merged into it."""
        payload = {k: v for k, v in data.items() if k != "id"}
        with self._lock:
            db = self._session_factory()
            try:
                row = db.get(Document, (collection, doc_id))
                if row is None:
                    row = Document(collection=collection, id=doc_id, data=_apply_fields({}, payload))
                    db.add(row)
                elif merge:
                    row.data = _apply_fields(row.data or {}, payload)
                else:
                    row.data = _apply_fields({}, payload)
                db.commit()
                db.refresh(row)
                doc = _to_doc(row)
            finally:
                db.close()
            self._notify(collection)
        return doc

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        expect: dict | None = None,
    ) -> dict:
        """Update fields of an existing document.

        ``expect`` is a compare-and-set precondition: every listed field must hold
        the given value at write time, otherwise PreconditionFailed is raised and
        nothing is written.
        """
        with self._lock:
            db = self._session_factory()
            try:
                row = db.get(Document, (collection, doc_id))
                if row is None:
                    raise DocumentNotFound(f"{collection}/{doc_id} not found")
                current = row.data or {}
                for key, value in (expect or {}).items():
                    if current.get(key) != value:
                        raise PreconditionFailed(
                            f"{collection}/{doc_id}: expected {key}={value!r}, found {current.get(key)!r}"
                        )
                row.data = _apply_fields(current, fields)
                db.commit()
                db.refresh(row)
                doc = _to_doc(row)
            finally:
                db.close()
            self._notify(collection)
        return doc

    # ---------- Live queries ----------

    def listen(
        self,
        collection: str,
        filters: Iterable[FieldFilter],
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """Register a live query. Returns an idempotent unsubscribe callable."""
        filters = tuple(filters)
        self._check_filters(filters)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None  # no event loop: deliver synchronously

        with self._lock:
            listener = _Listener(
                id=next(self._ids),
                collection=collection,
                filters=filters,
                on_snapshot=on_snapshot,
                on_error=on_error,
                loop=loop,
            )
            self._listeners[listener.id] = listener
            logger.debug("Listener %s opened on %s %s", listener.id, collection, filters)
            try:
                docs = self._load(collection)
            except SQLAlchemyError as exc:
                self._fail(listener, exc)
            else:
                self._evaluate(listener, docs)

        def unsubscribe() -> None:
            with self._lock:
                if self._listeners.pop(listener.id, None) is not None:
                    logger.debug("Listener %s closed", listener.id)
                listener.active = False

        return unsubscribe

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _check_filters(self, filters: tuple[FieldFilter, ...]) -> None:
        for flt in filters:
            if flt.op == "in" and len(flt.value) > self.membership_limit:
                raise QueryLimitError(
                    f"'in' filter on {flt.field} lists {len(flt.value)} values; limit is {self.membership_limit}"
                )
            if flt.op == "in" and not flt.value:
                raise QueryLimitError(f"'in' filter on {flt.field} needs at least one value")

    def _notify(self, collection: str) -> None:
        listeners = [l for l in self._listeners.values() if l.collection == collection]
        if not listeners:
            return
        try:
            docs = self._load(collection)
        except SQLAlchemyError as exc:
            for listener in listeners:
                self._fail(listener, exc)
            return
        for listener in listeners:
            self._evaluate(listener, docs)

    def _evaluate(self, listener: _Listener, docs: list[dict]) -> None:
        result = [doc for doc in docs if matches(doc, listener.filters)]
        if result == listener.last:
            return
        listener.last = result
        self._dispatch(listener, listener.on_snapshot, [dict(doc) for doc in result])

    def _fail(self, listener: _Listener, exc: Exception) -> None:
        logger.warning("Listener %s on %s failed: %s", listener.id, listener.collection, exc)
        self._listeners.pop(listener.id, None)
        listener.active = False
        if listener.on_error is not None:
            self._dispatch(listener, listener.on_error, exc, force=True)

    def _dispatch(self, listener: _Listener, callback: Callable, payload: Any, force: bool = False) -> None:
        def run() -> None:
            if not listener.active and not force:
                return
            try:
                callback(payload)
            except Exception:
                logger.exception("Listener %s callback raised", listener.id)

        if listener.loop is not None and not listener.loop.is_closed():
            listener.loop.call_soon_threadsafe(run)
        else:
            run()
