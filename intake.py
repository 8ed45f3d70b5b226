import asyncio
import logging

from starlette.concurrency import run_in_threadpool

from errors import ValidationError
from schemas import has_image_payload, message_event

logger = logging.getLogger(__name__)


def validate_compose(receiver_id, content):
    if receiver_id is None or isinstance(receiver_id, bool) or not isinstance(receiver_id, int):
        raise ValidationError("receiverId must be an integer")
    if not isinstance(content, str):
        raise ValidationError("content must be a string")
    if has_image_payload(content):
        return content
    if not content.strip():
        raise ValidationError("Message content is empty")
    return content


class MessageIntake:
    """The only path that creates messages.

    A message is persisted before it is published, and only the receiver's
    room is notified. The sender uses the returned message directly.
    """

    def __init__(self, storage, channel):
        self.storage = storage
        self.channel = channel
        self._lock = asyncio.Lock()

    async def submit(self, sender_id: int, receiver_id, content):
        content = validate_compose(receiver_id, content)
        if receiver_id == sender_id:
            raise ValidationError("Cannot send a message to yourself")

        # persist and publish under one lock so room order matches id order
        async with self._lock:
            receiver = await run_in_threadpool(self.storage.get_user, receiver_id)
            if receiver is None:
                raise ValidationError(f"Unknown receiver: {receiver_id}")
            message = await run_in_threadpool(
                self.storage.create_message, sender_id, receiver_id, content
            )
            logger.info("Message %s stored: %s -> %s", message.id, sender_id, receiver_id)
            try:
                self.channel.publish(receiver_id, message_event(message))
            except Exception:
                logger.exception("Publishing message %s failed", message.id)
        return message
