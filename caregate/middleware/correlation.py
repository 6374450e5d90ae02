"""Correlation ID middleware.

Generates or extracts a correlation ID per request and scopes both it and the
authenticated principal to that request's logging context.

Pure ASGI rather than BaseHTTPMiddleware, which does not play well with
asyncpg connections held across the request.
"""

import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from caregate.logging_config import correlation_id_ctx, get_logger, principal_ctx

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
_MAX_INCOMING_LENGTH = 128


class CorrelationIdMiddleware:
    """Adds an ``X-Correlation-ID`` to every request and response.

    An incoming header value is reused if present and reasonably short;
    otherwise a new UUID is generated. The principal is cleared at the start
    of each request and filled in by the auth dependency.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        incoming = headers.get(b"x-correlation-id", b"").decode(errors="replace")
        correlation_id = (
            incoming if 0 < len(incoming) <= _MAX_INCOMING_LENGTH else str(uuid.uuid4())
        )

        correlation_token = correlation_id_ctx.set(correlation_id)
        principal_token = principal_ctx.set(None)

        start_time = time.perf_counter()
        status_code: int | None = None
        method = scope.get("method", "")
        path = scope.get("path", "")

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status")
                response_headers = list(message.get("headers", []))
                response_headers.append(
                    (CORRELATION_ID_HEADER.lower().encode(), correlation_id.encode())
                )
                message = {**message, "headers": response_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
            logger.info(
                "Request completed",
                method=method,
                path=path,
                status_code=status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
        except Exception:
            logger.exception(
                "Request failed",
                method=method,
                path=path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise
        finally:
            principal_ctx.reset(principal_token)
            correlation_id_ctx.reset(correlation_token)
