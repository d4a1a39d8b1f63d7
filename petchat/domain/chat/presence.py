"""Presence directory - maps a user id to the live connection it can be reached on"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

# Close code for a socket superseded by a newer connection of the same user
WS_CLOSE_SESSION_REPLACED = 4409

_CLOSE = object()


class ChatConnection(Protocol):
    """Anything the coordinator can push named events to"""

    def send(self, event: str, payload: Any) -> None: ...

    def terminate(self, code: int) -> None: ...


class QueuedConnection:
    """
    Outbound side of one client connection.

    ``send`` never blocks: frames are queued and written by a single writer
    task, so a client receives events in exactly the order they were sent.
    """

    def __init__(
        self,
        send_json: Callable[[dict], Awaitable[None]],
        label: str = "",
        close_socket: Optional[Callable[[int], Awaitable[None]]] = None,
    ):
        self._send_json = send_json
        self._close_socket = close_socket
        self._close_code: Optional[int] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self.label = label
        self.closed = False

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def send(self, event: str, payload: Any) -> None:
        if self.closed:
            logger.debug(f"Dropping {event} for closed connection {self.label}")
            return
        self._queue.put_nowait({"event": event, "data": payload})

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                break
            if frame is _CLOSE:
                if self._close_socket is not None:
                    try:
                        await self._close_socket(self._close_code)
                    except Exception as e:
                        logger.warning(f"⚠️ Failed to close socket {self.label}: {e}")
                break
            try:
                await self._send_json(frame)
            except Exception as e:
                logger.warning(f"⚠️ Failed to deliver {frame['event']} to {self.label}: {e}")
                self.closed = True
                break

    def terminate(self, code: int) -> None:
        """Close the socket with ``code`` once already queued frames are written"""
        if self.closed:
            return
        self._close_code = code
        self._queue.put_nowait(_CLOSE)
        self.closed = True

    async def close(self) -> None:
        """Flush queued frames and stop the writer"""
        if self.closed and self._writer is None:
            return
        self.closed = True
        if self._writer is not None:
            self._queue.put_nowait(None)
            try:
                await self._writer
            finally:
                self._writer = None


class PresenceDirectory:
    """
    One live connection per user.

    A newer connection for the same user replaces the older one; the older
    connection can no longer unregister the user and is no longer served.
    """

    def __init__(self):
        self._connections: dict[str, ChatConnection] = {}

    def register(self, user_id: str, connection: ChatConnection) -> Optional[ChatConnection]:
        previous = self._connections.get(user_id)
        self._connections[user_id] = connection
        if previous is not None and previous is not connection:
            logger.info(f"🔁 User {user_id} reconnected, replacing previous connection")
            return previous
        return None

    def unregister(self, user_id: str, connection: ChatConnection) -> bool:
        """Remove the user if ``connection`` is still the current one"""
        if self._connections.get(user_id) is connection:
            del self._connections[user_id]
            return True
        return False

    def get(self, user_id: str) -> Optional[ChatConnection]:
        return self._connections.get(user_id)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)
