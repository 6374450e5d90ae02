"""Append-only access audit log.

Every decision and every token or session lifecycle event writes one entry
inside the caller's transaction. Unlike ordinary application logging a failed
audit write is not tolerated: it raises AuditWriteError and the operation
that triggered it must not grant anything.
"""

import uuid
from collections import Counter, defaultdict
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.core.errors import AuditWriteError
from caregate.core.permissions import Action, DataCategory
from caregate.logging_config import get_logger
from caregate.models.access_log import AccessLogEntry, AccessOutcome, ActorType
from caregate.schemas.access_log import (
    AccessLogFilters,
    AccessLogSummary,
    Severity,
    SuspiciousActivity,
    SuspiciousActivityType,
)

logger = get_logger(__name__)

SUSPICIOUS_WINDOW_DAYS = 7
FAILED_ATTEMPTS_THRESHOLD = 5
FAILED_ATTEMPTS_HIGH = 10
OFF_HOURS_THRESHOLD = 3
EXPORT_THRESHOLD = 3
TOKEN_PROBE_THRESHOLD = 5
SHARED_IP_ACTOR_THRESHOLD = 3
BUSINESS_HOURS = (6, 22)

TOKEN_CONSUME_ACTION = "token.consume"


def token_actor(token_id: uuid.UUID | None) -> str:
    """Audit actor id for a capability token holder."""
    return f"token:{token_id}" if token_id else "token:unknown"


async def append_entry(
    db: AsyncSession,
    *,
    owner_id: uuid.UUID | None,
    actor_id: str | uuid.UUID,
    actor_type: ActorType,
    action: str,
    resource_type: str,
    outcome: AccessOutcome,
    reason: str,
    resource_id: str | None = None,
    child_id: uuid.UUID | None = None,
    session_id: uuid.UUID | None = None,
    ip_address: str | None = None,
    now: datetime | None = None,
) -> AccessLogEntry:
    """Write one audit entry.

    Raises:
        AuditWriteError: If the entry could not be flushed.
    """
    entry = AccessLogEntry(
        owner_id=owner_id,
        actor_id=str(actor_id),
        actor_type=actor_type,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        child_id=child_id,
        outcome=outcome,
        reason=reason,
        session_id=session_id,
        ip_address=ip_address,
        created_at=now or datetime.now(UTC),
    )
    try:
        db.add(entry)
        await db.flush()
    except SQLAlchemyError as exc:
        # Keep the failed entry from being retried by a later flush
        if entry in db:
            db.expunge(entry)
        logger.exception(
            "Failed to write audit entry",
            action=action,
            outcome=outcome.value,
        )
        raise AuditWriteError() from exc

    return entry


def _apply_filters(query, owner_id: uuid.UUID, filters: AccessLogFilters):
    query = query.where(AccessLogEntry.owner_id == owner_id)
    if filters.start is not None:
        query = query.where(AccessLogEntry.created_at >= filters.start)
    if filters.end is not None:
        query = query.where(AccessLogEntry.created_at <= filters.end)
    if filters.actor_id:
        query = query.where(AccessLogEntry.actor_id == filters.actor_id)
    if filters.resource_type:
        query = query.where(AccessLogEntry.resource_type == filters.resource_type)
    if filters.child_id is not None:
        query = query.where(AccessLogEntry.child_id == filters.child_id)
    if filters.outcome is not None:
        query = query.where(AccessLogEntry.outcome == filters.outcome)
    return query


async def _authorize_reader(
    db: AsyncSession, requester_id: uuid.UUID, owner_id: uuid.UUID, session=None
) -> None:
    from caregate.services.permission_resolver import authorize

    await authorize(
        db,
        requester_id,
        owner_id,
        None,
        DataCategory.AUDIT_LOG,
        Action.VIEW,
        session=session,
    )


async def query_access_log(
    db: AsyncSession,
    requester_id: uuid.UUID,
    owner_id: uuid.UUID,
    filters: AccessLogFilters | None = None,
    *,
    session=None,
) -> tuple[list[AccessLogEntry], int]:
    """Entries of one family's log, newest first, plus the unpaged total.

    Only the owner or a delegate holding manage-access may read the log.

    Raises:
        Unauthorized: If the requester may not read this family's log.
    """
    filters = filters or AccessLogFilters()
    await _authorize_reader(db, requester_id, owner_id, session)

    count_result = await db.execute(
        _apply_filters(select(func.count()).select_from(AccessLogEntry), owner_id, filters)
    )
    total = count_result.scalar_one()

    result = await db.execute(
        _apply_filters(select(AccessLogEntry), owner_id, filters)
        .order_by(AccessLogEntry.created_at.desc())
        .limit(filters.limit)
        .offset(filters.offset)
    )
    return list(result.scalars().all()), total


async def summarize_access_log(
    db: AsyncSession,
    requester_id: uuid.UUID,
    owner_id: uuid.UUID,
    start: datetime | None = None,
    end: datetime | None = None,
    *,
    session=None,
    now: datetime | None = None,
) -> AccessLogSummary:
    """Aggregate counts over a date range plus the current suspicious activity."""
    await _authorize_reader(db, requester_id, owner_id, session)

    filters = AccessLogFilters(start=start, end=end)
    result = await db.execute(_apply_filters(select(AccessLogEntry), owner_id, filters))
    entries = list(result.scalars().all())

    outcomes = Counter(entry.outcome for entry in entries)
    resources = Counter(
        f"{entry.resource_type}:{entry.resource_id or 'unknown'}" for entry in entries
    )
    most_accessed = resources.most_common(1)

    return AccessLogSummary(
        total_entries=len(entries),
        granted=outcomes[AccessOutcome.GRANTED],
        denied=outcomes[AccessOutcome.DENIED],
        unique_actors=len({entry.actor_id for entry in entries}),
        by_action=dict(Counter(entry.action for entry in entries)),
        most_accessed_resource=most_accessed[0][0] if most_accessed else None,
        suspicious_activity=await detect_suspicious_activity(db, owner_id, now=now),
    )


def _is_off_hours(timestamp: datetime) -> bool:
    start, end = BUSINESS_HOURS
    return timestamp.hour < start or timestamp.hour > end


async def detect_suspicious_activity(
    db: AsyncSession,
    owner_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> list[SuspiciousActivity]:
    """Flag patterns in the last seven days of a family's log.

    Hours are evaluated in UTC.
    """
    now = now or datetime.now(UTC)
    since = now - timedelta(days=SUSPICIOUS_WINDOW_DAYS)

    result = await db.execute(
        select(AccessLogEntry)
        .where(
            AccessLogEntry.owner_id == owner_id,
            AccessLogEntry.created_at >= since,
            AccessLogEntry.created_at <= now,
        )
        .order_by(AccessLogEntry.created_at.desc())
    )
    recent = list(result.scalars().all())
    findings: list[SuspiciousActivity] = []

    denied = [e for e in recent if e.outcome == AccessOutcome.DENIED]
    if len(denied) > FAILED_ATTEMPTS_THRESHOLD:
        findings.append(
            SuspiciousActivity(
                type=SuspiciousActivityType.multiple_failed_attempts,
                severity=(
                    Severity.high
                    if len(denied) > FAILED_ATTEMPTS_HIGH
                    else Severity.medium
                ),
                description=f"{len(denied)} failed access attempts detected",
                count=len(denied),
                related_entry_ids=[e.id for e in denied[:10]],
            )
        )

    off_hours = [e for e in recent if _is_off_hours(e.created_at)]
    if len(off_hours) > OFF_HOURS_THRESHOLD:
        findings.append(
            SuspiciousActivity(
                type=SuspiciousActivityType.off_hours_access,
                severity=Severity.medium,
                description=f"{len(off_hours)} access attempts outside normal hours",
                count=len(off_hours),
                related_entry_ids=[e.id for e in off_hours[:5]],
            )
        )

    exports = [e for e in recent if e.action.endswith(f".{Action.EXPORT.value}")]
    if len(exports) > EXPORT_THRESHOLD:
        findings.append(
            SuspiciousActivity(
                type=SuspiciousActivityType.bulk_data_access,
                severity=Severity.high,
                description=f"{len(exports)} data export attempts detected",
                count=len(exports),
                related_entry_ids=[e.id for e in exports],
            )
        )

    probes = [
        e
        for e in recent
        if e.action == TOKEN_CONSUME_ACTION and e.outcome == AccessOutcome.DENIED
    ]
    if len(probes) > TOKEN_PROBE_THRESHOLD:
        findings.append(
            SuspiciousActivity(
                type=SuspiciousActivityType.token_probing,
                severity=Severity.high,
                description=f"{len(probes)} attempts with invalid provider links",
                count=len(probes),
                related_entry_ids=[e.id for e in probes[:10]],
            )
        )

    by_ip: dict[str, list[AccessLogEntry]] = defaultdict(list)
    for entry in recent:
        if entry.ip_address:
            by_ip[entry.ip_address].append(entry)
    for ip, entries in by_ip.items():
        actors = {e.actor_id for e in entries}
        if len(actors) > SHARED_IP_ACTOR_THRESHOLD:
            findings.append(
                SuspiciousActivity(
                    type=SuspiciousActivityType.unusual_access_pattern,
                    severity=Severity.high,
                    description=f"IP address {ip} was used by {len(actors)} different actors",
                    count=len(actors),
                    related_entry_ids=[e.id for e in entries[:10]],
                )
            )

    if findings:
        logger.warning(
            "Suspicious activity detected",
            owner_id=str(owner_id),
            findings=[f.type.value for f in findings],
        )
    return findings
