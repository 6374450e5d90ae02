"""Tests for the resolved permission snapshot cache (in-memory test backend)."""

import uuid

import pytest

from caregate.config import settings
from caregate.core import permission_cache


@pytest.fixture
def ids():
    return uuid.uuid4(), uuid.uuid4(), uuid.uuid4()


async def lookup(actor, owner, child):
    generation = await permission_cache.current_generation(owner)
    return await permission_cache.get_snapshot(generation, actor, owner, child)


async def store(actor, owner, child, snapshot):
    generation = await permission_cache.current_generation(owner)
    await permission_cache.put_snapshot(generation, actor, owner, child, snapshot)


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, ids):
        actor, owner, child = ids
        assert await lookup(actor, owner, child) is None

        await store(actor, owner, child, {"role": "viewer"})
        assert await lookup(actor, owner, child) == {"role": "viewer"}
        assert await lookup(actor, owner, None) is None

    @pytest.mark.asyncio
    async def test_invalidation_is_per_family(self, ids):
        actor, owner, child = ids
        other_owner = uuid.uuid4()
        await store(actor, owner, child, {"role": "viewer"})
        await store(actor, other_owner, None, {"role": "guardian"})

        await permission_cache.invalidate_family(owner)

        assert await lookup(actor, owner, child) is None
        assert await lookup(actor, other_owner, None) == {"role": "guardian"}

    @pytest.mark.asyncio
    async def test_snapshot_stored_under_generation_read_before_invalidation(self, ids):
        actor, owner, child = ids
        generation = await permission_cache.current_generation(owner)

        await permission_cache.invalidate_family(owner)
        await permission_cache.put_snapshot(
            generation, actor, owner, child, {"role": "viewer"}
        )

        assert await lookup(actor, owner, child) is None

    @pytest.mark.asyncio
    async def test_disabled_by_zero_ttl(self, ids, monkeypatch):
        actor, owner, child = ids
        monkeypatch.setattr(settings, "permission_cache_ttl_seconds", 0)

        assert await permission_cache.current_generation(owner) is None
        await store(actor, owner, child, {"role": "viewer"})
        assert await lookup(actor, owner, child) is None

    @pytest.mark.asyncio
    async def test_bounded_size(self, ids, monkeypatch):
        actor, owner, _ = ids
        monkeypatch.setattr(settings, "permission_cache_max_entries", 2)

        children = [uuid.uuid4() for _ in range(3)]
        for child in children:
            await store(actor, owner, child, {"role": "viewer"})

        assert await lookup(actor, owner, children[0]) is None
        assert await lookup(actor, owner, children[2]) is not None


class TestCommitInvalidation:
    @pytest.mark.asyncio
    async def test_commit_invalidates_again(self, ids, db_session):
        actor, owner, child = ids
        await permission_cache.invalidate_family(owner, db_session)
        # Cached by a reader while the write is still uncommitted
        await store(actor, owner, child, {"role": "viewer"})
        assert await lookup(actor, owner, child) == {"role": "viewer"}

        await db_session.commit()

        assert await lookup(actor, owner, child) is None
        assert await permission_cache.current_generation(owner) == 2

    @pytest.mark.asyncio
    async def test_rollback_discards_pending(self, ids, db_session):
        _, owner, _ = ids
        await permission_cache.invalidate_family(owner, db_session)
        await db_session.rollback()
        await db_session.commit()

        assert await permission_cache.current_generation(owner) == 1
