"""
Tests for the in-flight guard and per-domain locks.
"""

import asyncio
import gc

import pytest

from linkdomains.domains.errors import DomainError, ErrorCode
from linkdomains.domains.guard import DomainLocks, InFlightGuard


class TestInFlightGuard:
    @pytest.mark.asyncio
    async def test_acquire_is_exclusive(self):
        guard = InFlightGuard(cooldown=0)
        key = guard.key("issue", "d1")
        assert guard.acquire(key)
        assert not guard.acquire(key)
        assert guard.is_running(key)

        guard.release(key)
        assert not guard.is_held(key)
        assert guard.acquire(key)

    @pytest.mark.asyncio
    async def test_cooldown_keeps_key_held(self):
        guard = InFlightGuard(cooldown=0.05)
        key = guard.key("issue", "d1")
        guard.acquire(key)
        guard.release(key)

        assert guard.is_held(key)
        assert not guard.is_running(key)
        assert not guard.acquire(key)

        await asyncio.sleep(0.1)
        assert not guard.is_held(key)
        assert guard.acquire(key)

    @pytest.mark.asyncio
    async def test_release_of_cooling_key_is_noop(self):
        guard = InFlightGuard(cooldown=0.05)
        key = guard.key("issue", "d1")
        guard.acquire(key)
        guard.release(key)
        guard.release(key, cooldown=0)
        assert guard.is_held(key)

    @pytest.mark.asyncio
    async def test_hold_raises_busy(self):
        guard = InFlightGuard(cooldown=0)
        key = guard.key("check", "d1")
        busy = DomainError(ErrorCode.CHECK_IN_PROGRESS, "busy")

        async with guard.hold(key, busy):
            with pytest.raises(DomainError) as exc_info:
                async with guard.hold(key, busy):
                    pass
            assert exc_info.value.code == ErrorCode.CHECK_IN_PROGRESS
        assert not guard.is_held(key)

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self):
        guard = InFlightGuard(cooldown=0)
        key = guard.key("check", "d1")
        with pytest.raises(RuntimeError):
            async with guard.hold(key, DomainError(ErrorCode.CHECK_IN_PROGRESS, "busy")):
                raise RuntimeError("boom")
        assert not guard.is_held(key)

    @pytest.mark.asyncio
    async def test_release_all(self):
        guard = InFlightGuard(cooldown=10)
        guard.acquire("issue:d1")
        guard.acquire("issue:d2")
        guard.release("issue:d2")
        assert len(guard) == 2

        guard.release_all()
        assert len(guard) == 0


class TestDomainLocks:
    @pytest.mark.asyncio
    async def test_same_lock_per_key(self):
        locks = DomainLocks()
        lock = locks("d1")
        assert locks("d1") is lock
        assert locks("d2") is not lock

    @pytest.mark.asyncio
    async def test_idle_locks_are_pruned(self):
        locks = DomainLocks()
        async with locks("d1"):
            assert "d1" in locks
            assert len(locks) == 1
        gc.collect()
        assert "d1" not in locks
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_waiters_share_the_held_lock(self):
        locks = DomainLocks()
        order = []

        async def worker(name):
            async with locks("d1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]
        gc.collect()
        assert len(locks) == 0
