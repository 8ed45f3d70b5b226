import asyncio
import logging
import uuid

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class SocketConnection:
    """A live websocket with its own outbox.

    ``push`` only enqueues; a single ``pump`` task writes frames to the socket
    in the order they were pushed.
    """

    def __init__(self, websocket: WebSocket, user_id: int):
        self.connection_id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self._outbox = asyncio.Queue()
        self._closed = False

    def push(self, event: dict):
        if self._closed:
            return
        self._outbox.put_nowait(event)

    def close(self):
        if not self._closed:
            self._closed = True
            self._outbox.put_nowait(None)

    async def pump(self):
        while True:
            event = await self._outbox.get()
            if event is None:
                return
            try:
                await self.websocket.send_json(event)
            except (WebSocketDisconnect, RuntimeError):
                logger.debug("Connection %s went away while sending", self.connection_id)
                self._closed = True
                return


class RealtimeChannel:
    """Per-user rooms of live connections.

    Rooms are named by user id. Everything lives in memory; after a restart
    clients reconnect and join again.
    """

    def __init__(self):
        self._connections = {}
        self._rooms = {}
        self._memberships = {}

    def attach(self, connection):
        self._connections[connection.connection_id] = connection
        self._memberships.setdefault(connection.connection_id, set())

    def join(self, connection_id: str, user_id: int):
        if connection_id not in self._connections:
            raise KeyError(connection_id)
        room = self._rooms.setdefault(user_id, {})
        if connection_id in room:
            return
        room[connection_id] = self._connections[connection_id]
        self._memberships[connection_id].add(user_id)
        logger.info("Connection %s joined room %s", connection_id, user_id)

    def publish(self, user_id: int, event: dict) -> int:
        delivered = 0
        # copy: a push may trigger a leave
        for connection_id, connection in list(self._rooms.get(user_id, {}).items()):
            try:
                connection.push(event)
            except Exception:
                logger.exception("Push to connection %s failed", connection_id)
                continue
            delivered += 1
        logger.debug("Published %s to room %s (%d connections)", event.get("type"), user_id, delivered)
        return delivered

    def leave(self, connection_id: str):
        for user_id in self._memberships.pop(connection_id, set()):
            room = self._rooms.get(user_id)
            if room is None:
                continue
            room.pop(connection_id, None)
            if not room:
                del self._rooms[user_id]
        if self._connections.pop(connection_id, None) is not None:
            logger.info("Connection %s left", connection_id)

    def members(self, user_id: int):
        return list(self._rooms.get(user_id, {}))

    def rooms_of(self, connection_id: str):
        return set(self._memberships.get(connection_id, set()))

    def close(self):
        for connection in list(self._connections.values()):
            connection.close()
        self._connections.clear()
        self._rooms.clear()
        self._memberships.clear()
