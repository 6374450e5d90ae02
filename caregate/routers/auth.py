"""Authentication router: login, logout and session elevation."""

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.config import settings
from caregate.core.auth import CurrentActor
from caregate.core.errors import Unauthenticated
from caregate.core.security import create_access_token, verify_password
from caregate.database import get_db
from caregate.logging_config import get_logger
from caregate.middleware.rate_limit import get_client_ip, limiter
from caregate.models.user import User
from caregate.schemas.auth import (
    ElevateRequest,
    ElevateResponse,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
)
from caregate.services import session_manager

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["authentication"])


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={
        200: {"description": "Login successful"},
        401: {"model": ErrorResponse, "description": "Invalid credentials"},
    },
)
@limiter.limit("10/minute")
async def login(
    body: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> LoginResponse:
    """Authenticate and open a session bound to the presenting device."""
    client_ip = get_client_ip(request)

    result = await db.execute(select(User).where(User.email == body.email.lower()))
    user = result.scalar_one_or_none()

    if not user or not verify_password(body.password, user.hashed_password):
        logger.warning(
            "Failed login attempt",
            email=body.email,
            client_ip=client_ip,
            reason="invalid_credentials",
        )
        raise Unauthenticated("Invalid email or password")

    if not user.is_active:
        logger.warning(
            "Failed login attempt",
            email=body.email,
            client_ip=client_ip,
            reason="account_disabled",
        )
        raise Unauthenticated("Invalid email or password")

    try:
        session = await session_manager.create_session(
            db,
            user.id,
            body.device_fingerprint,
            ip_address=client_ip,
            user_agent=request.headers.get("user-agent"),
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    user.last_login_at = datetime.now(UTC)
    await db.commit()

    logger.info(
        "User logged in",
        user_id=str(user.id),
        session_id=str(session.id),
        client_ip=client_ip,
    )
    return LoginResponse(
        access_token=create_access_token(user.id, session.id),
        expires_in=settings.access_token_expire_minutes * 60,
        session_id=session.id,
        user_id=user.id,
    )


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> LogoutResponse:
    """End the current session. The JWT becomes useless with it."""
    await session_manager.invalidate(db, actor.session.id, "logout")
    await db.commit()
    logger.info("User logged out", user_id=str(actor.user_id))
    return LogoutResponse()


@router.post(
    "/elevate",
    response_model=ElevateResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid password"}},
)
@limiter.limit("5/minute")
async def elevate(
    body: ElevateRequest,
    request: Request,
    actor: CurrentActor,
    db: AsyncSession = Depends(get_db),
) -> ElevateResponse:
    """Re-enter the password to unlock one sensitive operation."""
    if not verify_password(body.password, actor.user.hashed_password):
        logger.warning(
            "Failed elevation attempt",
            user_id=str(actor.user_id),
            client_ip=actor.ip_address,
        )
        raise Unauthenticated("Invalid password")

    now = datetime.now(UTC)
    elevated = await session_manager.elevate(db, actor.session.id, now=now)
    await db.commit()
    if not elevated:
        raise Unauthenticated("Session expired or invalid")

    return ElevateResponse(
        elevated=True,
        expires_at=now + timedelta(minutes=settings.elevation_window_minutes),
    )
