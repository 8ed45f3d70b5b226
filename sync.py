"""
Client-side view of one open conversation.

``ConversationSync`` reconciles a point-in-time history fetch with the live
push stream from the server. Pushed messages that arrive before the history
is in are buffered and replayed afterwards, deduplicated by message id.
Messages that belong to any other conversation are dropped.
"""
import asyncio
import enum
import json
import logging

from pydantic import ValidationError as SchemaError

from schemas import MessageResponse

logger = logging.getLogger(__name__)


class ConversationState(enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"


class Subscription:
    """Handle returned by ``LiveFeed.subscribe``; cancel it to stop delivery."""

    def __init__(self, feed, handler):
        self._feed = feed
        self.handler = handler
        self.active = True

    def cancel(self):
        if self.active:
            self.active = False
            self._feed._remove(self)


class LiveFeed:
    """Fans server push frames out to the current subscribers."""

    def __init__(self):
        self._subscriptions = []

    def subscribe(self, handler) -> Subscription:
        sub = Subscription(self, handler)
        self._subscriptions.append(sub)
        return sub

    def _remove(self, sub):
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def dispatch(self, event):
        for sub in list(self._subscriptions):
            if sub.active:
                sub.handler(event)

    def dispatch_frame(self, raw: str):
        """Decode one websocket text frame and dispatch its message, if any."""
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable frame")
            return
        if not isinstance(frame, dict):
            logger.warning("Dropping non-object frame")
            return
        if frame.get("type") == "message":
            self.dispatch(frame.get("message"))
        elif frame.get("type") == "error":
            logger.warning("Server error frame: %s", frame.get("message"))
        else:
            logger.debug("Ignoring %s frame", frame.get("type"))

    def __len__(self):
        return len(self._subscriptions)


def _coerce(event):
    if isinstance(event, MessageResponse):
        return event
    return MessageResponse.model_validate(event)


class ConversationSync:
    def __init__(self, me: int, fetch_history, feed: LiveFeed):
        self.me = me
        self.fetch_history = fetch_history
        self.feed = feed
        self.state = ConversationState.UNLOADED
        self.peer = None
        self.messages = []
        self._seen = set()
        self._buffer = []
        self._subscription = None
        self._pending = None

    @property
    def conversation(self):
        if self.peer is None:
            return None
        return frozenset((self.me, self.peer))

    def _belongs(self, message) -> bool:
        return {message.sender_id, message.receiver_id} == {self.me, self.peer} and self.me != self.peer

    async def open(self, peer: int):
        self.close()
        self.peer = peer
        self.state = ConversationState.LOADING
        self._subscription = self.feed.subscribe(self._on_event)
        return await self._load()

    async def reload(self):
        """Retry a failed history fetch for the conversation still being loaded."""
        if self.state is not ConversationState.LOADING:
            raise RuntimeError("reload() is only valid while loading")
        return await self._load()

    async def _load(self):
        key = self.conversation
        task = asyncio.ensure_future(self.fetch_history(self.peer))
        self._pending = task
        await asyncio.wait({task})
        if self._pending is task:
            self._pending = None

        if task.cancelled() or self.conversation != key or self.state is not ConversationState.LOADING:
            logger.debug("Discarding stale history for %s", sorted(key))
            return None
        error = task.exception()
        if error is not None:
            logger.error("History fetch for %s failed: %s", sorted(key), error)
            raise error

        self._apply_history(task.result())
        return self.messages

    def _apply_history(self, history):
        self.messages = []
        self._seen = set()
        for item in history:
            self._append(_coerce(item))
        buffered, self._buffer = self._buffer, []
        for message in buffered:
            self._append(message)
        self.state = ConversationState.LOADED

    def _append(self, message):
        if message.id in self._seen:
            return
        self._seen.add(message.id)
        self.messages.append(message)

    def _on_event(self, event):
        try:
            message = _coerce(event)
        except SchemaError:
            logger.warning("Dropping malformed message event: %r", event)
            return
        if self.state is ConversationState.UNLOADED or not self._belongs(message):
            logger.debug("Dropping message %s outside the open conversation", message.id)
            return
        if self.state is ConversationState.LOADING:
            self._buffer.append(message)
        else:
            self._append(message)

    def apply_sent(self, message):
        """Apply the sender's own compose result."""
        self._on_event(message)

    def close(self):
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self.state = ConversationState.UNLOADED
        self.peer = None
        self.messages = []
        self._seen = set()
        self._buffer = []
