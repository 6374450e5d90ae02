"""Password hashing, session JWTs and capability token secrets."""

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from caregate.config import settings

TOKEN_PREFIX = "cg_"
_DISPLAY_PREFIX_LENGTH = 10


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a bcrypt hash."""
    return bcrypt.checkpw(
        plain_password.encode("utf-8"),
        hashed_password.encode("utf-8"),
    )


def hash_password(password: str) -> str:
    """Hash a password using bcrypt.

    Args:
        password: The plain text password to hash

    Returns:
        The bcrypt hash of the password
    """
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def create_access_token(
    user_id: uuid.UUID,
    session_id: uuid.UUID,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT bound to one server-side session.

    The JWT only names the session; whether that session is still usable is
    decided by the Session Manager on every request.

    Args:
        user_id: User's unique identifier
        session_id: Session the token was issued for
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "sid": str(session_id),
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
    }

    return jwt.encode(
        payload,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a JWT access token.

    Returns:
        Token payload dict if valid, None if invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        if payload.get("type") != "access":
            return None
        return payload
    except JWTError:
        return None


class TokenData:
    """Parsed token data for type safety."""

    def __init__(self, payload: dict):
        self.user_id: uuid.UUID = uuid.UUID(payload["sub"])
        self.session_id: uuid.UUID = uuid.UUID(payload["sid"])
        self.exp: datetime = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)


def generate_capability_secret() -> str:
    """Generate a raw capability token string (shown to the issuer once)."""
    return f"{TOKEN_PREFIX}{secrets.token_urlsafe(32)}"


def hash_capability_secret(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def display_prefix(raw: str) -> str:
    return raw[:_DISPLAY_PREFIX_LENGTH]
