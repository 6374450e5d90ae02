# Business Logic Services
from caregate.services.capability_tokens import (
    consume_token,
    issue_token,
    list_tokens,
    revoke_token,
    validate_token,
)
from caregate.services.permission_resolver import (
    Decision,
    authorize,
    held_permissions,
    resolve,
    resolve_token_request,
)
from caregate.services.scheduler import start_scheduler, stop_scheduler

__all__ = [
    "Decision",
    "authorize",
    "consume_token",
    "held_permissions",
    "issue_token",
    "list_tokens",
    "resolve",
    "resolve_token_request",
    "revoke_token",
    "start_scheduler",
    "stop_scheduler",
    "validate_token",
]
