from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_TTL_MINUTES
from errors import AuthError


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())


def create_token(user_id: int, ttl_minutes: int = ACCESS_TOKEN_TTL_MINUTES) -> str:
    expires = datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)
    return jwt.encode({"user_id": user_id, "exp": expires}, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> int:
    """Return the user id carried by ``token`` or raise AuthError."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        raise AuthError("Invalid or expired token") from e
    user_id = payload.get("user_id")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise AuthError("Invalid token payload")
    return user_id


def token_from_headers(headers, query_params=None):
    """Bearer token from an Authorization header, falling back to ``?token=``."""
    auth_header = headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        if token:
            return token
    if query_params is not None:
        return query_params.get("token") or None
    return None
