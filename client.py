import json
import logging

import httpx
import websockets

from errors import AuthError, ChatError, NotFoundError, PersistenceError, ValidationError
from schemas import MessageResponse, UserResponse

logger = logging.getLogger(__name__)

_ERRORS = {
    400: ValidationError,
    401: AuthError,
    404: NotFoundError,
    503: PersistenceError,
}


class ChatClient:
    """Async client for the messaging API.

    Pass ``transport`` to run against an in-process app (``httpx.ASGITransport``).
    """

    def __init__(self, base_url: str = "http://localhost:8000", transport=None):
        self.base_url = base_url.rstrip("/")
        self.http = httpx.AsyncClient(base_url=self.base_url, transport=transport)
        self.token = None
        self.user_id = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self.http.aclose()

    def _headers(self):
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs):
        resp = await self.http.request(method, path, headers=self._headers(), **kwargs)
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = None
            detail = body.get("message", resp.text) if isinstance(body, dict) else resp.text
            raise _ERRORS.get(resp.status_code, ChatError)(detail)
        return resp.json()

    # ----------------- Auth -----------------
    async def register(self, username: str, password: str) -> UserResponse:
        data = await self._request("POST", "/register", json={"username": username, "password": password})
        return UserResponse.model_validate(data)

    async def login(self, username: str, password: str) -> int:
        data = await self._request("POST", "/login", json={"username": username, "password": password})
        self.token = data["token"]
        self.user_id = data["userId"]
        return self.user_id

    async def me(self) -> UserResponse:
        return UserResponse.model_validate(await self._request("GET", "/me"))

    # ----------------- Directory -----------------
    async def search_user(self, username: str):
        try:
            data = await self._request("GET", f"/users/search/{username}")
        except NotFoundError:
            return None
        return UserResponse.model_validate(data)

    # ----------------- Messages -----------------
    async def fetch_history(self, peer_id: int):
        data = await self._request("GET", f"/conversation/{peer_id}")
        return [MessageResponse.model_validate(m) for m in data]

    async def send_message(self, receiver_id: int, content: str) -> MessageResponse:
        data = await self._request("POST", "/messages", json={"receiverId": receiver_id, "content": content})
        return MessageResponse.model_validate(data)

    # ----------------- Realtime -----------------
    def ws_url(self) -> str:
        url = self.base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{url}/ws?token={self.token}"

    async def listen(self, feed):
        """Connect, join our own room and dispatch pushes into ``feed`` until closed."""
        if not self.token:
            raise AuthError("Log in before listening")
        async with websockets.connect(self.ws_url()) as ws:
            await ws.send(json.dumps({"type": "join", "userId": self.user_id}))
            logger.info("Listening for user %s", self.user_id)
            async for raw in ws:
                feed.dispatch_frame(raw)
