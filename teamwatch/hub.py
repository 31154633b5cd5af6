"""WebSocket fan-out of live team state to observers.

Every connected observer gets its own bounded ``asyncio.Queue`` and a
sender task draining it, so a slow or stuck socket never delays ingestion
or delivery to anyone else.  Publishing only enqueues; an observer whose
queue is full, or whose socket fails on send, is dropped.  Reconnecting is
the observer's job.

Every message is an envelope::

    {"type": "<kind>", "payload": {...}, "timestamp": "<ISO-8601 UTC>"}

Server → observer kinds: ``snapshot``, ``team_update``, ``heartbeat``,
``history``, ``session_detail``, ``error``.
Observer → server kinds: ``switch_team``, ``get_history``, ``get_session``.
"""

import asyncio
import contextlib
import enum
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from teamwatch.aggregator import StateSnapshot
from teamwatch.logging_setup import log_caller
from teamwatch.models import TeamChange
from teamwatch.store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256
DEFAULT_HEARTBEAT_SECONDS = 5.0

# SQLite INTEGER range; larger ids cannot exist and do not bind.
_MAX_SESSION_ID = 2**63 - 1


class MessageKind(str, enum.Enum):
    """Server → observer message types."""

    SNAPSHOT = "snapshot"
    TEAM_UPDATE = "team_update"
    HEARTBEAT = "heartbeat"
    HISTORY = "history"
    SESSION_DETAIL = "session_detail"
    ERROR = "error"


class RequestKind(str, enum.Enum):
    """Observer → server message types."""

    SWITCH_TEAM = "switch_team"
    GET_HISTORY = "get_history"
    GET_SESSION = "get_session"


class ObserverRequest(BaseModel):
    type: RequestKind
    payload: dict[str, Any] = {}


def _session_id(value: Any) -> int | None:
    """Coerce a requested session id, or None if it is not a usable integer."""
    if isinstance(value, bool):
        return None
    try:
        session_id = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not 0 < session_id <= _MAX_SESSION_ID:
        return None
    return session_id


def envelope(kind: MessageKind, payload: Any) -> dict:
    return {
        "type": kind.value,
        "payload": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@dataclass(eq=False)
class Observer:
    websocket: Any
    queue: asyncio.Queue
    active_team: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    sender: asyncio.Task | None = None


class BroadcastHub:
    """Registry of connected observers.

    Args:
        snapshot: Callable returning the aggregator's current
            ``StateSnapshot``.
        store: Session history used for ``get_history`` / ``get_session``
            requests.  ``None`` disables both (observers get an error).
        queue_size: Per-observer outbound queue bound.
    """

    def __init__(
        self,
        snapshot: Callable[[], StateSnapshot],
        store: SessionStore | None = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.snapshot = snapshot
        self.store = store
        self.queue_size = queue_size
        self.observers: list[Observer] = []

    @property
    def count(self) -> int:
        return len(self.observers)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def register(self, websocket: Any) -> Observer:
        """Add an already-accepted socket and queue its initial snapshot."""
        observer = Observer(websocket=websocket, queue=asyncio.Queue(maxsize=self.queue_size))
        self.observers.append(observer)
        observer.sender = asyncio.create_task(self._sender(observer))
        self._enqueue(observer, self._snapshot_message(observer))
        logger.info("Observer %s connected | observers=%d", observer.id, self.count)
        return observer

    async def connect(self, websocket: WebSocket) -> Observer:
        await websocket.accept()
        return self.register(websocket)

    def discard(self, observer: Observer) -> None:
        """Remove *observer* from the broadcast set (idempotent)."""
        if observer not in self.observers:
            return
        self.observers.remove(observer)
        sender = observer.sender
        if sender is not None and sender is not asyncio.current_task() and not sender.done():
            sender.cancel()
        logger.info("Observer %s disconnected | observers=%d", observer.id, self.count)

    async def serve(self, websocket: WebSocket) -> None:
        """Run one observer connection until the client goes away."""
        log_caller.set("hub")
        observer = await self.connect(websocket)
        try:
            while True:
                text = await websocket.receive_text()
                await self.handle_request(observer, text)
        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # Raised by receive_text() once close() has shut the socket.
            logger.debug("Observer %s receive ended: %s", observer.id, e)
        finally:
            self.discard(observer)

    async def _sender(self, observer: Observer) -> None:
        log_caller.set("hub")
        try:
            while True:
                message = await observer.queue.get()
                await observer.websocket.send_json(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Send to observer %s failed: %r", observer.id, e)
            self.discard(observer)

    async def close(self) -> None:
        """Stop every sender and close every socket."""
        observers, self.observers = self.observers, []
        senders = [o.sender for o in observers if o.sender is not None]
        for sender in senders:
            sender.cancel()
        await asyncio.gather(*senders, return_exceptions=True)
        for observer in observers:
            with contextlib.suppress(Exception):
                await observer.websocket.close()
        if observers:
            logger.info("Closed %d observer connection(s)", len(observers))

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _enqueue(self, observer: Observer, message: dict) -> None:
        try:
            observer.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Observer %s is not keeping up, dropping it", observer.id)
            self.discard(observer)

    def _snapshot_message(self, observer: Observer) -> dict:
        snap = self.snapshot()
        payload = snap.to_dict()
        if observer.active_team is not None:
            payload["active_team"] = observer.active_team
        return envelope(MessageKind.SNAPSHOT, payload)

    def publish(self, change: TeamChange) -> None:
        """Send an incremental update for *change* to every observer."""
        payload = {"team": change.team, "kind": change.kind.value, **change.payload()}
        message = envelope(MessageKind.TEAM_UPDATE, payload)
        for observer in list(self.observers):
            self._enqueue(observer, message)

    def heartbeat(self) -> None:
        message = envelope(MessageKind.HEARTBEAT, {"observers": self.count})
        for observer in list(self.observers):
            self._enqueue(observer, message)

    async def heartbeat_loop(self, interval: float = DEFAULT_HEARTBEAT_SECONDS) -> None:
        log_caller.set("hub")
        while True:
            await asyncio.sleep(interval)
            self.heartbeat()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _error(self, observer: Observer, message: str) -> None:
        self._enqueue(observer, envelope(MessageKind.ERROR, {"message": message}))

    async def handle_request(self, observer: Observer, raw: str | dict) -> None:
        """Answer one observer request.  Replies go to *observer* only."""
        try:
            data = json.loads(raw) if isinstance(raw, str) else raw
            request = ObserverRequest.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.debug("Malformed request from observer %s: %s", observer.id, e)
            self._error(observer, "Malformed request")
            return

        if request.type is RequestKind.SWITCH_TEAM:
            team = request.payload.get("team")
            observer.active_team = str(team) if team else None
            self._enqueue(observer, self._snapshot_message(observer))
            return

        if self.store is None:
            self._error(observer, "Session history is not available")
            return

        if request.type is RequestKind.GET_HISTORY:
            try:
                sessions = await asyncio.to_thread(self.store.list_sessions)
            except Exception:
                logger.exception("Listing sessions failed for observer %s", observer.id)
                self._error(observer, "Session history could not be read")
                return
            self._enqueue(observer, envelope(MessageKind.HISTORY, {"sessions": sessions}))
            return

        session_id = _session_id(request.payload.get("id"))
        if session_id is None:
            self._error(observer, "get_session requires an integer 'id'")
            return
        try:
            detail = await asyncio.to_thread(self.store.get_session, session_id)
        except Exception:
            logger.exception("Reading session %d failed for observer %s", session_id, observer.id)
            self._error(observer, f"Session {session_id} could not be read")
            return
        if detail is None:
            self._error(observer, f"Session {session_id} not found")
            return
        self._enqueue(observer, envelope(MessageKind.SESSION_DETAIL, detail))
