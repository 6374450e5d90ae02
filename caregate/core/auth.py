"""Authentication dependencies.

Every authenticated request carries a Bearer JWT naming a server-side session
and an ``X-Device-Fingerprint`` header. The JWT alone is never enough: the
Session Manager must confirm the session is live and bound to the presenting
device.
"""

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.core.errors import Unauthenticated
from caregate.core.security import TokenData, decode_access_token
from caregate.database import get_db
from caregate.logging_config import get_logger, principal_ctx
from caregate.middleware.rate_limit import get_client_ip
from caregate.models.user import User
from caregate.models.user_session import UserSession
from caregate.services.session_manager import get_session, validate_session

logger = get_logger(__name__)

DEVICE_FINGERPRINT_HEADER = "X-Device-Fingerprint"


@dataclass
class AuthContext:
    """The authenticated user and the session they presented."""

    user: User
    session: UserSession
    ip_address: str | None = None

    @property
    def user_id(self) -> uuid.UUID:
        return self.user.id


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def get_current_actor(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """Resolve the request's user and live session.

    Raises:
        Unauthenticated: If the JWT, fingerprint or session is missing or no
            longer valid.
    """
    token = _bearer_token(request)
    if not token:
        raise Unauthenticated()

    payload = decode_access_token(token)
    if payload is None:
        raise Unauthenticated("Invalid or expired token")

    try:
        token_data = TokenData(payload)
    except (KeyError, ValueError):
        raise Unauthenticated("Invalid or expired token")

    fingerprint = request.headers.get(DEVICE_FINGERPRINT_HEADER)
    if not fingerprint:
        raise Unauthenticated("Device fingerprint required")

    valid = await validate_session(db, token_data.session_id, fingerprint)
    # Persist the refresh, or the invalidation that a failed check performed
    await db.commit()
    if not valid:
        raise Unauthenticated("Session expired or invalid")

    session = await get_session(db, token_data.session_id)
    if session is None or session.user_id != token_data.user_id:
        raise Unauthenticated("Session expired or invalid")

    user = await db.get(User, token_data.user_id)
    if user is None or not user.is_active:
        raise Unauthenticated("User account is disabled")

    principal_ctx.set(str(user.id))
    return AuthContext(user=user, session=session, ip_address=get_client_ip(request))


CurrentActor = Annotated[AuthContext, Depends(get_current_actor)]
