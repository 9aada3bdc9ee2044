import asyncio

import pytest

from draft_locks import LockAcquisitionTimeout, LockContention, LockManager


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_second_acquire_is_contended(locks):
    async def scenario():
        await locks.acquire("X")
        with pytest.raises(LockContention):
            await locks.acquire("X")
        # other keys are independent
        await locks.acquire("Y")

    asyncio.run(scenario())


def test_release_without_lock_is_a_noop(locks, store):
    asyncio.run(locks.release("never-taken"))
    assert store.list_locks() == []


def test_with_lock_releases_when_fn_raises(locks):
    async def boom():
        raise RuntimeError("boom")

    async def scenario():
        with pytest.raises(RuntimeError):
            await locks.with_lock("X", boom)
        # immediately available again, no waiting for the TTL
        token = await locks.acquire("X")
        assert token

    asyncio.run(scenario())


def test_with_lock_returns_result(locks):
    async def work():
        return 42

    assert asyncio.run(locks.with_lock("X", work)) == 42
    assert not asyncio.run(locks.is_locked("X"))


def test_expired_lock_can_be_taken_over(store):
    clock = FakeClock()
    crashed = LockManager(store, duration=30.0, clock=clock)
    newcomer = LockManager(store, duration=30.0, clock=clock)

    async def scenario():
        await crashed.acquire("item")
        with pytest.raises(LockContention):
            await newcomer.acquire("item")
        clock.now += 31
        assert store.get_lock("item")["lockedAt"] == 1000.0
        await newcomer.acquire("item")
        assert store.get_lock("item")["expiresAt"] == clock.now + 30.0

    asyncio.run(scenario())


def test_stale_release_does_not_free_new_holder(store):
    clock = FakeClock()
    manager = LockManager(store, duration=30.0, clock=clock)

    async def scenario():
        old_token = await manager.acquire("item")
        clock.now += 31
        await manager.acquire("item")
        await manager.release("item", old_token)
        assert await manager.is_locked("item")

    asyncio.run(scenario())


def test_retry_gives_up_with_timeout(store):
    manager = LockManager(store, retry_delay=0.0, max_retries=3)

    async def scenario():
        await manager.acquire("X")
        with pytest.raises(LockAcquisitionTimeout) as info:
            await manager.acquire_with_retry("X")
        assert info.value.attempts == 3
        assert info.value.key == "X"

    asyncio.run(scenario())


def test_retry_waits_for_release(locks):
    async def scenario():
        token = await locks.acquire("X")

        async def release_later():
            await asyncio.sleep(0.02)
            await locks.release("X", token)

        releaser = asyncio.create_task(release_later())
        async with locks.locked("X"):
            assert await locks.is_locked("X")
        await releaser

    asyncio.run(scenario())


def test_concurrent_holders_never_overlap(locks):
    events = []

    async def worker(n):
        async with locks.locked("shared"):
            events.append(("enter", n))
            await asyncio.sleep(0.002)
            events.append(("exit", n))

    async def scenario():
        await asyncio.gather(*(worker(n) for n in range(15)))

    asyncio.run(scenario())
    assert len(events) == 30
    for i in range(0, len(events), 2):
        enter, exit_ = events[i], events[i + 1]
        assert enter[0] == "enter" and exit_[0] == "exit"
        assert enter[1] == exit_[1]


def test_retry_delay_backoff_and_jitter(store):
    fixed = LockManager(store, retry_delay=1.0)
    assert fixed._retry_delay(1) == fixed._retry_delay(5) == 1.0
    backoff = LockManager(store, retry_delay=0.5, retry_backoff=2.0)
    assert backoff._retry_delay(3) == 2.0
    jittered = LockManager(store, retry_delay=1.0, retry_jitter=0.25)
    assert all(1.0 <= jittered._retry_delay(1) <= 1.25 for _ in range(20))
