"""Resolved permission snapshot cache.

Snapshots are keyed by (actor, owner, child) and carry a short TTL. Each
family has a generation counter that is part of every key; bumping it on a
settings or grant write makes every snapshot for that family unreachable at
once. Writers bump it when they write and again after their transaction
commits, so snapshots read from pre-commit rows never outlive the commit.

Redis backs the cache in production. If Redis is unavailable the cache is
skipped (reads miss, writes are dropped) and decisions are resolved from the
database. During tests an in-memory dict is used instead so that the
invalidation logic is exercised.
"""

import json
import time
import uuid
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from caregate.config import settings
from caregate.logging_config import get_logger

logger = get_logger(__name__)

_SNAPSHOT_PREFIX = "perm:snapshot:"
_GENERATION_PREFIX = "perm:gen:"

# Session.info key holding families to invalidate after commit
_PENDING_KEY = "caregate.invalidate_families"

# Lazy-initialized Redis client
_redis_client: aioredis.Redis | None = None

# In-memory cache for tests: {key: (expire_timestamp, snapshot)}
_test_snapshots: dict[str, tuple[float, dict[str, Any]]] = {}
_test_generations: dict[str, int] = {}


def _get_redis() -> aioredis.Redis:
    """Get or create the Redis client for cache operations."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
    return _redis_client


def _snapshot_key(
    generation: int,
    actor_id: uuid.UUID,
    owner_id: uuid.UUID,
    child_id: uuid.UUID | None,
) -> str:
    child = str(child_id) if child_id else "-"
    return f"{_SNAPSHOT_PREFIX}{owner_id}:{generation}:{actor_id}:{child}"


async def current_generation(owner_id: uuid.UUID) -> int | None:
    """Return the family's generation, or None if the cache is unusable.

    Callers read this before loading from the database and store the result
    under it, so a snapshot built from rows older than an invalidation can
    never be filed under the generation that invalidation produced.
    """
    if settings.permission_cache_ttl_seconds <= 0:
        return None

    if settings.testing:
        return _test_generations.get(str(owner_id), 0)

    try:
        value = await _get_redis().get(f"{_GENERATION_PREFIX}{owner_id}")
    except aioredis.RedisError:
        logger.warning("Permission cache unavailable; resolving from database")
        return None
    return int(value) if value else 0


async def get_snapshot(
    generation: int | None,
    actor_id: uuid.UUID,
    owner_id: uuid.UUID,
    child_id: uuid.UUID | None,
) -> dict[str, Any] | None:
    """Return a cached snapshot, or None on a miss."""
    if generation is None:
        return None

    key = _snapshot_key(generation, actor_id, owner_id, child_id)
    if settings.testing:
        entry = _test_snapshots.get(key)
        if entry is None:
            return None
        expire, snapshot = entry
        if time.monotonic() > expire:
            _test_snapshots.pop(key, None)
            return None
        return snapshot

    try:
        raw = await _get_redis().get(key)
    except aioredis.RedisError:
        logger.warning("Permission cache unavailable; resolving from database")
        return None
    return json.loads(raw) if raw else None


async def put_snapshot(
    generation: int | None,
    actor_id: uuid.UUID,
    owner_id: uuid.UUID,
    child_id: uuid.UUID | None,
    snapshot: dict[str, Any],
) -> None:
    ttl = settings.permission_cache_ttl_seconds
    if generation is None or ttl <= 0:
        return

    key = _snapshot_key(generation, actor_id, owner_id, child_id)
    if settings.testing:
        if len(_test_snapshots) >= settings.permission_cache_max_entries:
            _test_snapshots.clear()
        _test_snapshots[key] = (time.monotonic() + ttl, snapshot)
        return

    try:
        await _get_redis().setex(key, ttl, json.dumps(snapshot))
    except aioredis.RedisError:
        logger.warning("Permission cache unavailable; snapshot not stored")


async def invalidate_family(
    owner_id: uuid.UUID, db: AsyncSession | None = None
) -> None:
    """Make every cached snapshot for ``owner_id``'s family unreachable.

    With ``db`` the family is also queued on the session and invalidated
    again once it commits (see ``flush_committed``). Readers in other
    sessions still see the old rows until then, and anything they cache
    in between must not survive the commit.

    Raises:
        redis.RedisError: If the generation could not be bumped. A write that
            cannot invalidate must not complete, or stale grants would be
            served until the TTL runs out.
    """
    if db is not None:
        db.info.setdefault(_PENDING_KEY, set()).add(owner_id)

    if settings.testing:
        key = str(owner_id)
        _test_generations[key] = _test_generations.get(key, 0) + 1
        return

    await _get_redis().incr(f"{_GENERATION_PREFIX}{owner_id}")
    logger.debug("Permission cache invalidated", owner_id=str(owner_id))


async def flush_committed(db: AsyncSession) -> None:
    """Invalidate the families queued on ``db`` by a transaction that just committed."""
    for owner_id in db.info.pop(_PENDING_KEY, set()):
        await invalidate_family(owner_id)


def discard_pending(db: AsyncSession) -> None:
    db.info.pop(_PENDING_KEY, None)


def clear_cache() -> None:
    """Drop all in-memory snapshots (tests only)."""
    _test_snapshots.clear()
    _test_generations.clear()
