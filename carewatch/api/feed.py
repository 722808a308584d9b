"""Live feed WebSocket: merged views for the actor's current scope."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Callable

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from carewatch.core.deps import actor_from_payload
from carewatch.core.security import decode_access_token
from carewatch.core.ws_manager import ws_manager
from carewatch.db.session import get_store
from carewatch.schemas.actor import Actor
from carewatch.services.aggregator import MergedView
from carewatch.services.document_store import DocumentStore
from carewatch.services.membership import MembershipSet, Scope
from carewatch.services.scoped_feed import ScopedFeed

logger = logging.getLogger(__name__)

router = APIRouter()


def default_scope(actor: Actor) -> Scope:
    """Care managers start on their own caseload; everyone else sees all subjects."""
    if actor.role == "caremanager":
        return Scope.assignee(actor.id)
    return Scope.all()


def _snapshot_event(collection: str, view: MergedView) -> dict:
    return {
        "collection": collection,
        "generation": view.generation,
        "documents": view.documents(sort_key=lambda d: d.get("created_at") or "", reverse=True),
    }


def _members_event(scope: Scope | None, members: MembershipSet) -> dict:
    return {
        "scope": str(scope),
        "count": None if members.is_unfiltered else len(members.ids),
        "error": str(members.error) if members.error else None,
    }


async def pump_events(websocket: WebSocket, queue: asyncio.Queue, on_failed: Callable[[], None]) -> None:
    """Send queued events in order. A failed send stops the pump and calls ``on_failed``."""
    while True:
        event, data = await queue.get()
        try:
            await ws_manager.send(websocket, event, data)
        except Exception as exc:
            logger.warning("Feed send failed, stopping updates: %s", exc)
            on_failed()
            return


@router.websocket("/ws/feed")
async def feed_endpoint(websocket: WebSocket, store: DocumentStore = Depends(get_store)):
    """
    Live feed. Client connects with ?token=<jwt>[&scope=all|unassigned|<assignee_id>].
    Client sends {"scope": "..."} to switch scope, or "ping".
    Server pushes: feed.scope, feed.members, feed.snapshot, feed.error, alert.forwarded, pong
    """
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Missing token")
        return

    actor = actor_from_payload(decode_access_token(token))
    if actor is None:
        await websocket.close(code=4003, reason="Invalid or expired token")
        return

    await ws_manager.connect(websocket, actor.id)
    queue: asyncio.Queue = asyncio.Queue()
    feed = ScopedFeed(store)
    feed.on_members(lambda members: queue.put_nowait(("feed.members", _members_event(feed.scope, members))))
    feed.on_change(lambda collection, view: queue.put_nowait(("feed.snapshot", _snapshot_event(collection, view))))
    feed.on_error(
        lambda collection, index, exc: queue.put_nowait(
            ("feed.error", {"collection": collection, "chunk": index, "error": str(exc)})
        )
    )

    sender = asyncio.create_task(pump_events(websocket, queue, feed.close))
    try:
        initial = websocket.query_params.get("scope")
        scope = Scope.parse(initial) if initial else default_scope(actor)
        queue.put_nowait(("feed.scope", {"scope": str(scope)}))
        feed.set_scope(scope)
        while True:
            data = await websocket.receive_text()
            if feed.closed:
                break
            if data == "ping":
                queue.put_nowait(("pong", None))
                continue
            try:
                message = json.loads(data)
                scope = Scope.parse(message.get("scope"))
            except (ValueError, AttributeError) as exc:
                queue.put_nowait(("feed.error", {"collection": None, "chunk": None, "error": f"Bad message: {exc}"}))
                continue
            queue.put_nowait(("feed.scope", {"scope": str(scope)}))
            feed.set_scope(scope)
    except WebSocketDisconnect:
        pass
    finally:
        feed.close()
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sender
        ws_manager.disconnect(websocket, actor.id)
