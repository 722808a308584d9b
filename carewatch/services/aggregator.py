"""Sharded subscription aggregation.

The store caps membership queries at K ids, so a live view over an arbitrary set
of subjects is assembled from one subscription per chunk of at most K ids. The
chunks' snapshots are merged into a single :class:`MergedView` keyed by
document id.

Internal bookkeeping (arena + index):

* ``_slices``: chunk index -> {doc id -> doc}, the latest snapshot per chunk
* ``_doc_chunks``: doc id -> chunk indices whose slice holds it
* ``_subject_chunk``: subject id -> owning chunk index
* ``_docs``: the merged, deduplicated result handed to consumers

A snapshot replaces its chunk's whole slice. The merged value for a document is
taken from the lowest chunk index that holds it, so the result depends only on
the latest slice of each chunk and not on the order chunks report in.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError

from carewatch.core.config import settings
from carewatch.services.document_store import DocumentStore, where
from carewatch.services.membership import MembershipResolver, MembershipSet, Scope, ScopeUnavailable

logger = logging.getLogger(__name__)

ChangeCallback = Callable[["MergedView"], None]
ChunkErrorCallback = Callable[["MergedView", int, Exception], None]


def chunk_ids(ids: Sequence[str], size: int) -> list[tuple[str, ...]]:
    """Split ``ids`` into contiguous chunks of at most ``size``."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    return [tuple(ids[i : i + size]) for i in range(0, len(ids), size)]


def expected_chunk_count(n: int, size: int) -> int:
    return math.ceil(n / size) if n else 0


@dataclass(eq=False)
class _Shard:
    index: int
    ids: tuple[str, ...] | None  # None: the single unfiltered subscription
    live: bool = True
    unsubscribe: Callable[[], None] | None = None
    last: list[dict] | None = None
    error: Exception | None = None

    def teardown(self) -> None:
        self.live = False
        if self.unsubscribe is not None:
            self.unsubscribe()
            self.unsubscribe = None


@dataclass(eq=False)
class MergedView:
    """Consumer-facing merged collection assembled from chunk subscriptions."""

    store: DocumentStore
    collection: str
    match_field: str
    chunk_size: int
    members: MembershipSet | None = None
    generation: int = 0
    detached: bool = False
    _shards: list[_Shard] = field(default_factory=list)
    _slices: dict[int, dict[str, dict]] = field(default_factory=dict)
    _doc_chunks: dict[str, set[int]] = field(default_factory=dict)
    _subject_chunk: dict[str, int] = field(default_factory=dict)
    _docs: dict[str, dict] = field(default_factory=dict)
    _change_listeners: list[ChangeCallback] = field(default_factory=list)
    _error_listeners: list[ChunkErrorCallback] = field(default_factory=list)
    _rebuilding: bool = False

    # ---------- Consumer API ----------

    def snapshot(self) -> dict[str, dict]:
        """Copy of the merged map (document id -> document)."""
        return {doc_id: dict(doc) for doc_id, doc in self._docs.items()}

    def documents(self, sort_key: Callable[[dict], Any] | None = None, reverse: bool = False) -> list[dict]:
        docs = [dict(doc) for doc in self._docs.values()]
        if sort_key is not None:
            docs.sort(key=sort_key, reverse=reverse)
        return docs

    def __len__(self) -> int:
        return len(self._docs)

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._docs

    @property
    def is_unfiltered(self) -> bool:
        return self.members is not None and self.members.is_unfiltered

    @property
    def chunk_count(self) -> int:
        return len(self._shards)

    @property
    def chunks(self) -> list[tuple[str, ...] | None]:
        return [shard.ids for shard in self._shards]

    @property
    def errors(self) -> dict[int, Exception]:
        """Chunk index -> last error, for chunks that stopped updating."""
        return {shard.index: shard.error for shard in self._shards if shard.error is not None}

    def owner_of(self, subject_id: str) -> int | None:
        """Index of the chunk whose subscription covers ``subject_id``."""
        return self._subject_chunk.get(subject_id)

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a change listener. Returns a callable that removes it."""
        self._change_listeners.append(callback)

        def remove() -> None:
            if callback in self._change_listeners:
                self._change_listeners.remove(callback)

        return remove

    def on_error(self, callback: ChunkErrorCallback) -> Callable[[], None]:
        self._error_listeners.append(callback)

        def remove() -> None:
            if callback in self._error_listeners:
                self._error_listeners.remove(callback)

        return remove

    def detach(self) -> None:
        """Release every chunk subscription. The view stays empty afterwards."""
        if self.detached:
            return
        self._teardown()
        self.detached = True
        self._change_listeners.clear()
        self._error_listeners.clear()
        logger.debug("View on %s detached", self.collection)

    # ---------- Membership changes ----------

    def set_members(self, members: MembershipSet) -> None:
        """Point the view at a new id set: tear everything down, then resubscribe."""
        if self.detached:
            raise RuntimeError("view is detached")
        self._teardown()
        self.members = members
        self.generation += 1
        self._rebuilding = True
        try:
            if members.is_unfiltered:
                self._open(_Shard(index=0, ids=None))
            else:
                for index, ids in enumerate(chunk_ids(members.ordered, self.chunk_size)):
                    for subject_id in ids:
                        self._subject_chunk[subject_id] = index
                    self._open(_Shard(index=index, ids=ids))
        finally:
            self._rebuilding = False
        logger.debug(
            "View on %s rebuilt (generation %s): %s chunk(s)",
            self.collection,
            self.generation,
            len(self._shards),
        )
        self._notify()

    def retry_failed(self) -> int:
        """Resubscribe chunks that stopped after an error. Returns how many were reopened."""
        failed = [shard for shard in self._shards if shard.error is not None]
        for shard in failed:
            shard.teardown()
            replacement = _Shard(index=shard.index, ids=shard.ids)
            self._shards[self._shards.index(shard)] = replacement
            self._subscribe(replacement)
        return len(failed)

    def _teardown(self) -> None:
        for shard in self._shards:
            shard.teardown()
        self._shards = []
        self._slices.clear()
        self._doc_chunks.clear()
        self._subject_chunk.clear()
        self._docs.clear()

    def _open(self, shard: _Shard) -> None:
        self._shards.append(shard)
        self._subscribe(shard)

    def _subscribe(self, shard: _Shard) -> None:
        filters = [] if shard.ids is None else [where(self.match_field, "in", shard.ids)]

        # The shard object itself carries the liveness flag checked on delivery.
        def on_snapshot(docs: list[dict]) -> None:
            self._apply(shard, docs)

        def on_error(exc: Exception) -> None:
            self._chunk_failed(shard, exc)

        try:
            shard.unsubscribe = self.store.listen(self.collection, filters, on_snapshot, on_error)
        except (SQLAlchemyError, ValueError) as exc:
            self._chunk_failed(shard, exc)

    # ---------- Snapshot merge ----------

    def _apply(self, shard: _Shard, docs: list[dict]) -> None:
        if not shard.live:
            logger.debug("Dropping late snapshot for torn-down chunk %s on %s", shard.index, self.collection)
            return
        shard.last = docs
        shard.error = None
        index = shard.index
        old = self._slices.get(index, {})
        new = {doc["id"]: doc for doc in docs}
        self._slices[index] = new

        for doc_id in old.keys() - new.keys():
            owners = self._doc_chunks.get(doc_id, set())
            owners.discard(index)
            if owners:
                self._docs[doc_id] = self._slices[min(owners)][doc_id]
            else:
                self._doc_chunks.pop(doc_id, None)
                self._docs.pop(doc_id, None)

        for doc_id in new:
            owners = self._doc_chunks.setdefault(doc_id, set())
            if owners and index not in owners:
                logger.debug("Document %s reported by chunks %s and %s", doc_id, sorted(owners), index)
            owners.add(index)
            self._docs[doc_id] = self._slices[min(owners)][doc_id]

        self._notify()

    def _chunk_failed(self, shard: _Shard, exc: Exception) -> None:
        if not shard.live:
            return
        shard.error = exc
        shard.unsubscribe = None  # the store cancels a failed listener
        logger.warning("Chunk %s on %s stopped updating: %s", shard.index, self.collection, exc)
        for callback in list(self._error_listeners):
            callback(self, shard.index, exc)

    def _notify(self) -> None:
        if self._rebuilding or self.detached:
            return
        for callback in list(self._change_listeners):
            callback(self)


class ShardedAggregator:
    """Factory for merged views over one store with a fixed chunk size."""

    def __init__(self, store: DocumentStore, chunk_size: int | None = None) -> None:
        self.store = store
        self.chunk_size = chunk_size or store.membership_limit or settings.membership_query_limit
        if self.chunk_size > store.membership_limit:
            raise ValueError(
                f"chunk size {self.chunk_size} exceeds the store's membership limit {store.membership_limit}"
            )

    def attach(
        self,
        members: MembershipSet,
        collection: str,
        match_field: str,
        on_change: ChangeCallback | None = None,
    ) -> MergedView:
        """Open a merged view over ``collection`` for the subjects in ``members``."""
        view = MergedView(
            store=self.store,
            collection=collection,
            match_field=match_field,
            chunk_size=self.chunk_size,
        )
        if on_change is not None:
            view.on_change(on_change)
        view.set_members(members)
        return view

    def fetch(self, members: MembershipSet, collection: str, match_field: str) -> list[dict]:
        """One-shot counterpart of :meth:`attach`: chunked reads merged by document id."""
        if members.is_unfiltered:
            return self.store.query(collection)
        merged: dict[str, dict] = {}
        for ids in chunk_ids(members.ordered, self.chunk_size):
            for doc in self.store.query(collection, [where(match_field, "in", ids)]):
                merged.setdefault(doc["id"], doc)
        return list(merged.values())


def fetch_in_scope(store: DocumentStore, scope: Scope, collection: str, match_field: str) -> list[dict]:
    """One-shot read of ``collection`` for every subject in ``scope``."""
    members = MembershipResolver(store).snapshot(scope)
    if members.error is not None:
        raise ScopeUnavailable(f"Could not resolve scope {scope}: {members.error}") from members.error
    return ShardedAggregator(store).fetch(members, collection, match_field)
