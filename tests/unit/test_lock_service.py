"""
Tests for the reconciliation execution lock.
"""
import asyncio
import pytest
from datetime import timedelta

from app.services import lock_service
from tests.utils.factories import now_utc

TTL = timedelta(minutes=5)


class TestAcquire:

    @pytest.mark.asyncio
    async def test_free_lock_is_acquired(self, store):
        assert await lock_service.acquire("exec-a", TTL) is True
        assert store.lock["holder_id"] == "exec-a"

    @pytest.mark.asyncio
    async def test_held_lock_is_refused(self, store):
        await lock_service.acquire("exec-a", TTL)

        assert await lock_service.acquire("exec-b", TTL) is False
        assert store.lock["holder_id"] == "exec-a"

    @pytest.mark.asyncio
    async def test_expired_lock_is_reclaimed(self, store):
        start = now_utc()
        await lock_service.acquire("exec-a", TTL, now=start)

        assert await lock_service.acquire("exec-b", TTL, now=start + TTL + timedelta(seconds=1)) is True
        assert store.lock["holder_id"] == "exec-b"

    @pytest.mark.asyncio
    async def test_concurrent_acquisitions_have_one_winner(self, store):
        results = await asyncio.gather(*[
            lock_service.acquire(f"exec-{i}", TTL) for i in range(5)
        ])

        assert results.count(True) == 1


class TestRelease:

    @pytest.mark.asyncio
    async def test_owner_releases(self, store):
        await lock_service.acquire("exec-a", TTL)

        assert await lock_service.release("exec-a") is True
        assert store.lock is None

    @pytest.mark.asyncio
    async def test_non_owner_cannot_release(self, store):
        await lock_service.acquire("exec-a", TTL)

        assert await lock_service.release("exec-b") is False
        assert store.lock["holder_id"] == "exec-a"

    @pytest.mark.asyncio
    async def test_previous_holder_cannot_release_after_reclaim(self, store):
        start = now_utc()
        await lock_service.acquire("exec-a", TTL, now=start - TTL * 2)
        await lock_service.acquire("exec-b", TTL, now=start)

        assert await lock_service.release("exec-a") is False
        assert store.lock["holder_id"] == "exec-b"

    @pytest.mark.asyncio
    async def test_released_lock_can_be_taken_again(self, store):
        await lock_service.acquire("exec-a", TTL)
        await lock_service.release("exec-a")

        assert await lock_service.acquire("exec-b", TTL) is True


class TestCurrentLock:

    @pytest.mark.asyncio
    async def test_no_lock(self, store):
        assert await lock_service.get_current_lock() is None

    @pytest.mark.asyncio
    async def test_current_lock_details(self, store):
        await lock_service.acquire("exec-a", TTL)

        lock = await lock_service.get_current_lock()

        assert lock.holder_id == "exec-a"
        assert "pid" in lock.process_info
        assert lock.is_expired(now_utc()) is False
        assert lock.is_expired(now_utc() + TTL * 2) is True
