"""Provider access through a capability token (magic link).

No account and no session: the token in the path is the credential. Each
visit consumes one use.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.core.errors import TokenInvalid
from caregate.database import get_db
from caregate.middleware.rate_limit import get_client_ip, limiter
from caregate.schemas.capability_token import ProviderAccessResponse, ProviderScope
from caregate.services.capability_tokens import consume_token

router = APIRouter(tags=["provider-access"])


@router.get("/provider-access/{token}", response_model=ProviderAccessResponse)
@limiter.limit("30/minute")
async def provider_access(
    token: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> ProviderAccessResponse:
    """Consume one use of a provider link and return what it unlocks.

    Raises:
        TokenInvalid (403): expired, exhausted, revoked or unknown token,
            or one whose issuer has lost access.
    """
    consumption = await consume_token(db, token, ip_address=get_client_ip(request))
    if not consumption.valid:
        # The denial is audited; keep it even though the request fails
        await db.commit()
        raise TokenInvalid(consumption.reason or "token invalid")

    link = consumption.token
    await db.commit()

    remaining = (
        link.max_access_count - link.access_count
        if link.max_access_count is not None
        else None
    )
    return ProviderAccessResponse(
        valid=True,
        scope=ProviderScope(
            child_id=link.child_id,
            permissions=sorted(consumption.permissions, key=lambda p: p.value),
            provider_label=link.provider_name,
            expires_at=link.expires_at,
            remaining_uses=remaining,
        ),
    )
