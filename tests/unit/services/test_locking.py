"""Unit tests for the database-backed lock."""

import asyncio

import pytest

from booking_sync.exceptions import LockContentionError
from booking_sync.services.locking import PersistentLock, order_scope


@pytest.fixture
def lock(session_factory, clock) -> PersistentLock:
    return PersistentLock(session_factory, clock, max_age=600)


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_first_acquire_creates_lock(self, lock: PersistentLock) -> None:
        assert await lock.acquire("sync", "worker-a", ttl=60)

        state = await lock.read("sync")
        assert state.locked
        assert state.owner == "worker-a"

    @pytest.mark.asyncio
    async def test_second_owner_is_refused(self, lock: PersistentLock) -> None:
        assert await lock.acquire("sync", "worker-a", ttl=60)
        assert not await lock.acquire("sync", "worker-b", ttl=60)
        assert (await lock.read("sync")).owner == "worker-a"

    @pytest.mark.asyncio
    async def test_release_requires_owner(self, lock: PersistentLock) -> None:
        await lock.acquire("sync", "worker-a", ttl=60)

        assert not await lock.release("sync", "worker-b")
        assert await lock.is_held("sync")

        assert await lock.release("sync", "worker-a")
        assert not await lock.is_held("sync")

    @pytest.mark.asyncio
    async def test_reacquire_after_release(self, lock: PersistentLock) -> None:
        await lock.acquire("sync", "worker-a", ttl=60)
        await lock.release("sync", "worker-a")

        assert await lock.acquire("sync", "worker-b", ttl=60)

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, lock: PersistentLock) -> None:
        assert await lock.acquire("sync", "worker-a", ttl=60)
        assert await lock.acquire(order_scope("1001"), "worker-b", ttl=60)
        assert not await lock.acquire(order_scope("1001"), "worker-c", ttl=60)

    @pytest.mark.asyncio
    async def test_force_release(self, lock: PersistentLock) -> None:
        await lock.acquire("sync", "worker-a", ttl=60)
        await lock.force_release("sync")

        assert not await lock.is_held("sync")


class TestConcurrentAcquire:
    @pytest.mark.asyncio
    async def test_only_one_concurrent_caller_wins(self, lock: PersistentLock) -> None:
        results = await asyncio.gather(
            *(lock.acquire("sync", f"worker-{i}", ttl=60) for i in range(5))
        )

        assert results.count(True) == 1
        winner = f"worker-{results.index(True)}"
        assert (await lock.read("sync")).owner == winner

    @pytest.mark.asyncio
    async def test_only_one_wins_on_existing_row(self, lock: PersistentLock) -> None:
        await lock.acquire("sync", "setup", ttl=60)
        await lock.release("sync", "setup")

        results = await asyncio.gather(
            *(lock.acquire("sync", f"worker-{i}", ttl=60) for i in range(5))
        )

        assert results.count(True) == 1


class TestStaleLocks:
    @pytest.mark.asyncio
    async def test_expired_lock_is_reclaimed(self, lock: PersistentLock, clock) -> None:
        await lock.acquire("sync", "crashed", ttl=60)
        clock.advance(61)

        assert not await lock.is_held("sync")
        assert await lock.acquire("sync", "worker-b", ttl=60)
        assert (await lock.read("sync")).owner == "worker-b"

    @pytest.mark.asyncio
    async def test_lock_older_than_max_age_is_reclaimed(self, lock: PersistentLock, clock) -> None:
        await lock.acquire("sync", "crashed", ttl=3600)
        clock.advance(601)

        state = await lock.read("sync")
        assert state.is_stale(clock.now(), 600)
        assert await lock.acquire("sync", "worker-b", ttl=60)

    @pytest.mark.asyncio
    async def test_live_lock_is_not_stale(self, lock: PersistentLock, clock) -> None:
        await lock.acquire("sync", "worker-a", ttl=60)
        clock.advance(30)

        state = await lock.read("sync")
        assert state.age_seconds(clock.now()) == 30
        assert not state.is_stale(clock.now(), 600)

    @pytest.mark.asyncio
    async def test_late_release_by_previous_owner_is_ignored(
        self, lock: PersistentLock, clock
    ) -> None:
        await lock.acquire("sync", "slow", ttl=60)
        clock.advance(61)
        await lock.acquire("sync", "fast", ttl=60)

        assert not await lock.release("sync", "slow")
        assert (await lock.read("sync")).owner == "fast"


class TestHold:
    @pytest.mark.asyncio
    async def test_hold_releases_on_exit(self, lock: PersistentLock) -> None:
        async with lock.hold("order:1", "worker-a", ttl=60):
            assert await lock.is_held("order:1")
        assert not await lock.is_held("order:1")

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, lock: PersistentLock) -> None:
        with pytest.raises(RuntimeError):
            async with lock.hold("order:1", "worker-a", ttl=60):
                raise RuntimeError("boom")
        assert not await lock.is_held("order:1")

    @pytest.mark.asyncio
    async def test_hold_raises_on_contention(self, lock: PersistentLock) -> None:
        await lock.acquire("order:1", "worker-a", ttl=60)

        with pytest.raises(LockContentionError) as exc_info:
            async with lock.hold("order:1", "worker-b", ttl=60):
                pass
        assert exc_info.value.holder == "worker-a"
