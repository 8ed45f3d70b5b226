import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Request, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from auth import hash_password, verify_password, create_token, decode_token, token_from_headers
from config import DATABASE_URL, CORS_ORIGINS, setup_logging
from database import make_engine, make_session_factory, init_db
from errors import ChatError, AuthError, NotFoundError, ValidationError
from intake import MessageIntake
from realtime import RealtimeChannel, SocketConnection
from schemas import (
    RegisterRequest,
    LoginRequest,
    MessageRequest,
    UserResponse,
    TokenResponse,
    MessageResponse,
)
from storage import DatabaseStorage

logger = logging.getLogger(__name__)


# ----------------- Dependencies -----------------
def get_storage(request: Request) -> DatabaseStorage:
    return request.app.state.storage


def get_intake(request: Request) -> MessageIntake:
    return request.app.state.intake


def get_current_user(request: Request, storage: DatabaseStorage = Depends(get_storage)):
    token = token_from_headers(request.headers)
    if not token:
        raise AuthError("Not authenticated")
    user = storage.get_user(decode_token(token))
    if user is None:
        raise AuthError("Unknown user")
    return user


# ----------------- Error handling -----------------
async def chat_error_handler(request: Request, exc: ChatError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
    return JSONResponse({"message": exc.message}, status_code=exc.status_code, headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"message": "Invalid request data", "errors": jsonable_encoder(exc.errors())},
        status_code=status.HTTP_400_BAD_REQUEST,
    )


# ----------------- App -----------------
def create_app(database_url: str = DATABASE_URL) -> FastAPI:
    setup_logging()

    engine = make_engine(database_url)
    init_db(engine)
    storage = DatabaseStorage(make_session_factory(engine))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.channel = RealtimeChannel()
        app.state.intake = MessageIntake(storage, app.state.channel)
        logger.info("Realtime channel started")
        try:
            yield
        finally:
            app.state.channel.close()
            engine.dispose()
            logger.info("Realtime channel closed")

    app = FastAPI(title="Direct Messaging", lifespan=lifespan)
    app.state.storage = storage

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    register_routes(app)
    return app


def register_routes(app: FastAPI):

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    @app.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
    def register(data: RegisterRequest, storage: DatabaseStorage = Depends(get_storage)):
        username = data.username.strip()
        if not username or not data.password:
            raise ValidationError("Username and password are required")
        if storage.get_user_by_username(username):
            raise ValidationError("Username already taken")
        user = storage.create_user(username, hash_password(data.password))
        logger.info("Registered user %s (%s)", user.id, user.username)
        return user

    @app.post("/login", response_model=TokenResponse)
    def login(data: LoginRequest, storage: DatabaseStorage = Depends(get_storage)):
        user = storage.get_user_by_username(data.username)
        if not user or not verify_password(data.password, user.password_hash):
            raise AuthError("Invalid credentials")
        return TokenResponse(token=create_token(user.id), user_id=user.id)

    @app.get("/me", response_model=UserResponse)
    def me(user=Depends(get_current_user)):
        return user

    @app.get("/users/search/{username}", response_model=UserResponse)
    def search_user(username: str, user=Depends(get_current_user), storage: DatabaseStorage = Depends(get_storage)):
        found = storage.get_user_by_username(username)
        if found is None:
            raise NotFoundError("User not found")
        return found

    @app.get("/conversation/{peer_user_id}", response_model=list[MessageResponse])
    def get_conversation(peer_user_id: int, user=Depends(get_current_user), storage: DatabaseStorage = Depends(get_storage)):
        return storage.get_messages(user.id, peer_user_id)

    @app.post("/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
    async def send_message(data: MessageRequest, user=Depends(get_current_user), intake: MessageIntake = Depends(get_intake)):
        return await intake.submit(user.id, data.receiver_id, data.content)

    @app.websocket("/ws")
    async def realtime_endpoint(websocket: WebSocket):
        await serve_socket(websocket, websocket.app.state.storage, websocket.app.state.channel)


# ----------------- Realtime -----------------
async def authenticate_socket(websocket: WebSocket, storage: DatabaseStorage):
    token = token_from_headers(websocket.headers, websocket.query_params)
    if not token:
        return None
    try:
        user_id = decode_token(token)
    except AuthError:
        return None
    user = await run_in_threadpool(storage.get_user, user_id)
    return user.id if user else None


def handle_frame(channel: RealtimeChannel, connection: SocketConnection, raw: str):
    try:
        frame = json.loads(raw)
    except ValueError:
        connection.push({"type": "error", "message": "Malformed frame"})
        return
    if not isinstance(frame, dict) or frame.get("type") != "join":
        connection.push({"type": "error", "message": "Unsupported frame"})
        return

    # the room joined is always the socket's own authenticated identity
    requested = frame.get("userId")
    if isinstance(requested, bool) or requested != connection.user_id:
        logger.warning(
            "Connection %s (user %s) tried to join room %r",
            connection.connection_id, connection.user_id, requested,
        )
        connection.push({"type": "error", "message": "Cannot join another user's room"})
        return
    channel.join(connection.connection_id, connection.user_id)
    connection.push({"type": "joined", "userId": connection.user_id})


async def serve_socket(websocket: WebSocket, storage: DatabaseStorage, channel: RealtimeChannel):
    user_id = await authenticate_socket(websocket, storage)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection = SocketConnection(websocket, user_id)
    channel.attach(connection)
    pump = asyncio.create_task(connection.pump())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("text") is None:
                connection.push({"type": "error", "message": "Binary frames are not supported"})
                continue
            handle_frame(channel, connection, message["text"])
    except WebSocketDisconnect:
        pass
    finally:
        channel.leave(connection.connection_id)
        connection.close()
        pump.cancel()
        await asyncio.wait({pump})


app = create_app()
