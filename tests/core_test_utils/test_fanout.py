"""Tests for concurrent fanout of coroutines."""

import asyncio

import pytest

from core_test_utils.fanout import fanout_tasks


class TestFanoutTasks:
    """Test fanout_tasks behavior."""

    @pytest.mark.asyncio
    async def test_zero_tasks_completes_immediately(self):
        """Test fanning out zero units returns without calling the factory."""
        calls = []

        async def make(i):
            calls.append(i)

        results = await fanout_tasks(0, make)

        assert results == []
        assert calls == []

    @pytest.mark.asyncio
    async def test_all_units_run(self):
        """Test every index is started exactly once and results come back in index order."""
        seen = []

        async def make(i):
            await asyncio.sleep(0.001 * (5 - i))
            seen.append(i)
            return i * 10

        results = await fanout_tasks(5, make)

        assert sorted(seen) == [0, 1, 2, 3, 4]
        assert results == [0, 10, 20, 30, 40]

    @pytest.mark.asyncio
    async def test_units_run_concurrently(self):
        """Test no unit waits for another to finish before starting."""
        started = 0
        all_started = asyncio.Event()

        async def make(i):
            nonlocal started
            started += 1
            if started == 10:
                all_started.set()
            await asyncio.wait_for(all_started.wait(), timeout=1)

        await fanout_tasks(10, make)

        assert started == 10

    @pytest.mark.asyncio
    async def test_waits_for_all_before_raising(self):
        """Test a failing unit does not abandon the others."""
        finished = []

        async def make(i):
            if i == 1:
                raise ValueError("unit 1 failed")
            await asyncio.sleep(0.01)
            finished.append(i)

        with pytest.raises(ValueError, match="unit 1 failed"):
            await fanout_tasks(4, make)

        assert sorted(finished) == [0, 2, 3]

    @pytest.mark.asyncio
    async def test_first_failure_by_index_is_raised(self):
        """Test the lowest-index failure is the one surfaced."""

        async def make(i):
            if i in (2, 3):
                await asyncio.sleep(0.01 if i == 2 else 0)
                raise RuntimeError(f"unit {i}")

        with pytest.raises(RuntimeError, match="unit 2"):
            await fanout_tasks(4, make)

    @pytest.mark.asyncio
    async def test_factory_error_cancels_started_units(self):
        """Test units started before the factory raised do not keep running."""
        finished = []

        async def unit(i):
            await asyncio.sleep(0.01)
            finished.append(i)

        def make(i):
            if i == 2:
                raise RuntimeError("cannot build unit 2")
            return unit(i)

        with pytest.raises(RuntimeError, match="unit 2"):
            await fanout_tasks(5, make)

        await asyncio.sleep(0.05)
        assert finished == []
