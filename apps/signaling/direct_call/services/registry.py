"""In-memory registry of signaling sessions addressable by connection id and name."""
from __future__ import annotations

import asyncio
import enum
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Iterator, Optional, Tuple

SendCallable = Callable[[dict], Awaitable[None]]


class ConnectionClosedError(ConnectionError):
    """Raised for messages posted to a connection that has been closed."""


class SignalingConnection:
    """Transport handle for one live signaling connection.

    Messages posted to a connection are written in posting order by a writer
    task that only lives while there is something to send. ``post`` never
    blocks, so callers can enqueue while holding a lock. Cancelling the
    returned future withdraws a message that has not been written yet.
    """

    def __init__(self, connection_id: str, send: SendCallable) -> None:
        self.connection_id = connection_id
        self._send = send
        self._outbox: Deque[Tuple[dict, asyncio.Future[None]]] = deque()
        self._writer: asyncio.Task[None] | None = None
        self._closed = False

    def post(self, message: dict) -> asyncio.Future[None]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        if self._closed:
            future.set_exception(ConnectionClosedError(f"connection {self.connection_id} is closed"))
            return future
        self._outbox.append((message, future))
        if self._writer is None or self._writer.done():
            self._writer = loop.create_task(self._write_pending())
        return future

    async def close(self) -> None:
        self._closed = True
        while self._outbox:
            _, future = self._outbox.popleft()
            if not future.done():
                future.set_exception(ConnectionClosedError(f"connection {self.connection_id} is closed"))
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass

    async def _write_pending(self) -> None:
        while self._outbox:
            message, future = self._outbox.popleft()
            if future.cancelled():
                continue
            try:
                await self._send(message)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_exception(ConnectionClosedError(f"connection {self.connection_id} is closed"))
                raise
            except Exception as exc:  # noqa: BLE001 - surfaced to whoever awaits the future
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(None)


class CallState(str, enum.Enum):
    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    IN_CALL = "in_call"


@dataclass(slots=True)
class UserSession:
    """One registered signaling endpoint."""

    name: str
    connection: SignalingConnection
    peer_name: Optional[str] = None
    sdp_offer: Any = None
    state: CallState = CallState.IDLE

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    def link(self, peer_name: str, state: CallState) -> None:
        self.peer_name = peer_name
        self.state = state

    def unlink(self) -> None:
        self.peer_name = None
        self.sdp_offer = None
        self.state = CallState.IDLE


class UserRegistry:
    """Sessions keyed by connection id with a unique secondary index on name.

    Not synchronised on its own; the signaling engine serialises access.
    """

    def __init__(self) -> None:
        self._by_id: Dict[str, UserSession] = {}
        self._ids_by_name: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[UserSession]:
        return iter(list(self._by_id.values()))

    def register(self, session: UserSession) -> None:
        if session.name in self._ids_by_name:
            raise ValueError(f"name {session.name!r} is already indexed")
        self._by_id[session.connection_id] = session
        self._ids_by_name[session.name] = session.connection_id

    def get_by_id(self, connection_id: str) -> Optional[UserSession]:
        return self._by_id.get(connection_id)

    def get_by_name(self, name: str | None) -> Optional[UserSession]:
        if name is None:
            return None
        connection_id = self._ids_by_name.get(name)
        if connection_id is None:
            return None
        return self._by_id.get(connection_id)

    def remove(self, connection_id: str) -> Optional[UserSession]:
        """Drop a session under both keys; missing entries are ignored."""

        session = self._by_id.pop(connection_id, None)
        if session is None:
            return None
        if self._ids_by_name.get(session.name) == connection_id:
            del self._ids_by_name[session.name]
        return session
