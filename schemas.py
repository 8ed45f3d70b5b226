from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

IMAGE_PREFIX = "data:image/"


class CamelModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


# ----------------- Requests -----------------
class RegisterRequest(CamelModel):
    username: str
    password: str


class LoginRequest(CamelModel):
    username: str
    password: str


class MessageRequest(CamelModel):
    receiver_id: int
    content: str


# ----------------- Responses -----------------
class UserResponse(CamelModel):
    id: int
    username: str


class TokenResponse(CamelModel):
    token: str
    user_id: int


class MessageResponse(CamelModel):
    id: int
    sender_id: int
    receiver_id: int
    content: str
    created_at: datetime


def has_image_payload(content: str) -> bool:
    return content.startswith(IMAGE_PREFIX)


def split_content(content: str):
    """Split message content into ``(image_data_uri, text)``.

    An image message stores the data URI first, optionally followed by a
    newline and a caption. Plain messages return ``(None, content)``.
    """
    if not has_image_payload(content):
        return None, content
    image, _, text = content.partition("\n")
    return image, text


def message_event(message) -> dict:
    """Server-to-client push frame for a persisted message."""
    payload = MessageResponse.model_validate(message).model_dump(mode="json", by_alias=True)
    return {"type": "message", "message": payload}
