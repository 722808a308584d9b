"""Scope-driven live feed over several collections.

A :class:`ScopedFeed` owns the "current scope" for one consumer (a console
session, a profile page, a field worker's client). It resolves the scope to a
live id set and keeps one :class:`MergedView` per configured collection pointed
at that set. Changing the scope closes the old resolver and tears down every
view before the new subscriptions are opened.
"""

from __future__ import annotations

import logging
from typing import Callable

from carewatch.core.config import settings
from carewatch.services.aggregator import MergedView, ShardedAggregator
from carewatch.services.document_store import DocumentStore
from carewatch.services.membership import MembershipHandle, MembershipResolver, MembershipSet, Scope

logger = logging.getLogger(__name__)


class ScopedFeed:
    """Merged views for a set of collections, all driven by one scope."""

    def __init__(
        self,
        store: DocumentStore,
        collections: dict[str, str] | None = None,
        chunk_size: int | None = None,
        resolver: MembershipResolver | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver or MembershipResolver(store)
        self.aggregator = ShardedAggregator(store, chunk_size)
        self.collections = dict(collections or settings.feed_collections)
        self.scope: Scope | None = None
        self.members: MembershipSet | None = None
        self.membership_error: Exception | None = None
        self.views: dict[str, MergedView] = {}
        self._membership: MembershipHandle | None = None
        self._change_listeners: list[Callable[[str, MergedView], None]] = []
        self._error_listeners: list[Callable[[str, int | None, Exception], None]] = []
        self._members_listeners: list[Callable[[MembershipSet], None]] = []
        self.closed = False

    def on_change(self, callback: Callable[[str, MergedView], None]) -> None:
        """``callback(collection, view)`` after any view changes."""
        self._change_listeners.append(callback)

    def on_error(self, callback: Callable[[str, int | None, Exception], None]) -> None:
        """``callback(collection, chunk_index, exc)``; collection is the subjects
        collection and chunk_index None for membership errors."""
        self._error_listeners.append(callback)

    def on_members(self, callback: Callable[[MembershipSet], None]) -> None:
        self._members_listeners.append(callback)

    def set_scope(self, scope: Scope) -> None:
        """Switch scope: release the old resolver and views, then resolve anew."""
        if self.closed:
            raise RuntimeError("feed is closed")
        if self._membership is not None:
            self._membership.close()
            self._membership = None
        for view in self.views.values():
            view.detach()
        self.views = {}
        self.scope = scope
        self.members = None
        self.membership_error = None
        logger.info("Feed scope set to %s", scope)
        self._membership = self.resolver.resolve(scope, self._members_changed)

    def _members_changed(self, members: MembershipSet) -> None:
        self.members = members
        self.membership_error = members.error
        if members.error is not None:
            for callback in list(self._error_listeners):
                callback(self.resolver.collection, None, members.error)
        for callback in list(self._members_listeners):
            callback(members)
        if self.views:
            # set_members notifies through the listeners registered below
            for view in self.views.values():
                view.set_members(members)
            return
        for collection, match_field in self.collections.items():
            view = self.aggregator.attach(members, collection, match_field)
            view.on_change(self._view_changed(collection))
            view.on_error(self._view_failed(collection))
            self.views[collection] = view
        for collection, view in self.views.items():
            self._emit(collection, view)

    def _view_changed(self, collection: str) -> Callable[[MergedView], None]:
        def changed(view: MergedView) -> None:
            self._emit(collection, view)

        return changed

    def _view_failed(self, collection: str) -> Callable[[MergedView, int, Exception], None]:
        def failed(view: MergedView, index: int, exc: Exception) -> None:
            for callback in list(self._error_listeners):
                callback(collection, index, exc)

        return failed

    def _emit(self, collection: str, view: MergedView) -> None:
        for callback in list(self._change_listeners):
            callback(collection, view)

    def close(self) -> None:
        """Detach every view and stop resolving. Safe to call twice."""
        if self.closed:
            return
        if self._membership is not None:
            self._membership.close()
            self._membership = None
        for view in self.views.values():
            view.detach()
        self.views = {}
        self.closed = True
        logger.debug("Feed closed")
