import asyncio
import logging
import threading
from collections import Counter
from dataclasses import dataclass

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from protocol import ChatMessage, JoinMessage, OutboundMessage, decode

logger = logging.getLogger(__name__)


class NotJoinedError(LookupError):
    """Raised by lookup() for a connection that is not in any room."""


@dataclass(frozen=True)
class Membership:
    connection: WebSocket
    room_id: str
    display_name: str


class ConnectionRegistry:
    """
    Tracks which live connection sits in which room.

    Connections are keyed by identity, so each one holds at most one
    membership. Rooms are never stored: a room is whatever set of
    memberships currently shares a room_id.
    """

    def __init__(self):
        self._members: dict[int, Membership] = {}
        self._lock = threading.Lock()

    def join(self, ws: WebSocket, room_id: str, display_name: str) -> None:
        membership = Membership(ws, room_id, display_name)
        with self._lock:
            previous = self._members.get(id(ws))
            self._members[id(ws)] = membership

        if previous is not None and previous.room_id != room_id:
            logger.info(
                "switch user=%s room=%s -> %s",
                display_name, previous.room_id, room_id,
            )
        else:
            logger.info("join user=%s room=%s", display_name, room_id)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("rooms=%s", self.active_rooms())

    def leave(self, ws: WebSocket) -> Membership | None:
        with self._lock:
            membership = self._members.pop(id(ws), None)

        if membership is not None:
            logger.info(
                "leave user=%s room=%s",
                membership.display_name, membership.room_id,
            )
        return membership

    def lookup(self, ws: WebSocket) -> Membership:
        with self._lock:
            membership = self._members.get(id(ws))
        if membership is None:
            raise NotJoinedError(f"connection {id(ws)} has not joined a room")
        return membership

    def members_of(self, room_id: str) -> list[Membership]:
        """Snapshot of the room; safe to iterate while others join or leave."""
        with self._lock:
            return [m for m in self._members.values() if m.room_id == room_id]

    def active_rooms(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(m.room_id for m in self._members.values()))

    def clear(self) -> None:
        with self._lock:
            self._members.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._members)

    def __contains__(self, ws: WebSocket) -> bool:
        with self._lock:
            return id(ws) in self._members


class RoomRouter:
    """Fans chat messages out to the sender's room."""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def dispatch(self, ws: WebSocket, raw: str | bytes) -> int:
        """Handle one inbound frame. Returns the number of deliveries."""
        message = decode(raw)
        if isinstance(message, JoinMessage):
            self.registry.join(ws, message.payload.room_id, message.payload.username)
        elif isinstance(message, ChatMessage):
            return await self.route(
                ws, message.payload.username, message.payload.message
            )
        return 0

    async def route(self, sender: WebSocket, username: str, text: str | None) -> int:
        """
        Send text to everyone in the sender's room, the sender included.

        Nothing is sent for an empty message or a sender outside any room.
        """
        if not text:
            logger.debug("empty chat from connection %s ignored", id(sender))
            return 0
        try:
            membership = self.registry.lookup(sender)
        except NotJoinedError:
            logger.debug("connection %s is not in a room, chat dropped", id(sender))
            return 0

        return await self.broadcast(membership.room_id, username, text)

    async def broadcast(self, room_id: str, username: str, text: str) -> int:
        """
        Send to every sendable member of room_id. Failed sends are skipped.

        The sends run concurrently but are awaited so the delivered count
        can be returned; a recipient stalled on backpressure delays the
        caller until its send completes or fails.
        """
        payload = OutboundMessage(username=username, message=text).model_dump()
        recipients = [
            m for m in self.registry.members_of(room_id) if is_sendable(m.connection)
        ]
        logger.debug("room=%s recipients=%d", room_id, len(recipients))

        async def safe_send(membership: Membership) -> bool:
            try:
                await membership.connection.send_json(payload)
            except (WebSocketDisconnect, ConnectionError, RuntimeError) as e:
                logger.warning(
                    "send to user=%s room=%s failed: %s",
                    membership.display_name, room_id, e,
                )
                return False
            except Exception as e:
                logger.warning(
                    "unexpected error sending to user=%s room=%s: %s",
                    membership.display_name, room_id, e,
                )
                return False
            return True

        results = await asyncio.gather(*[safe_send(m) for m in recipients])
        return sum(results)


def is_sendable(ws: WebSocket) -> bool:
    return (
        ws.client_state == WebSocketState.CONNECTED
        and ws.application_state == WebSocketState.CONNECTED
    )
