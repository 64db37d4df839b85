"""
Unit tests for the per-user job lock registry.
"""
import asyncio

import pytest

from finpulse.services.locks import UserLockRegistry


@pytest.mark.unit
class TestUserLockRegistry:
    """Test cases for UserLockRegistry."""

    async def test_runs_for_same_user_do_not_interleave(self, locks):
        """Test a second holder waits for the first to finish."""
        events = []

        async def job(name):
            async with locks.hold("user_a", "detection"):
                events.append(f"{name} start")
                await asyncio.sleep(0)
                events.append(f"{name} end")

        await asyncio.gather(job("first"), job("second"))

        assert events == ["first start", "first end", "second start", "second end"]

    async def test_idle_locks_are_released(self, locks):
        """Test the registry does not keep locks nobody holds."""
        async with locks.hold("user_a", "detection"):
            assert locks.is_locked("user_a", "detection") is True
            assert locks.active_count == 1

        assert locks.is_locked("user_a", "detection") is False
        assert locks.active_count == 0

    async def test_lock_kept_while_someone_waits(self):
        """Test a waiting holder still finds the lock after the first releases it."""
        registry = UserLockRegistry()
        first_in = asyncio.Event()
        release = asyncio.Event()

        async def first():
            async with registry.hold("user_a", "forecast"):
                first_in.set()
                await release.wait()

        async def second():
            await first_in.wait()
            async with registry.hold("user_a", "forecast"):
                assert registry.active_count == 1

        tasks = [asyncio.create_task(first()), asyncio.create_task(second())]
        await first_in.wait()
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(*tasks)

        assert registry.active_count == 0

    async def test_error_inside_hold_releases(self, locks):
        """Test a failing job still frees its lock."""
        with pytest.raises(ValueError):
            async with locks.hold("user_a", "learning"):
                raise ValueError("boom")

        assert locks.active_count == 0
