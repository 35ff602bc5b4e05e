"""Tests for the exactly-once completion guard."""

import asyncio
import threading

import pytest

from device_discovery.completion import SingleCompletion


class TestSingleCompletion:
    """Tests for SingleCompletion."""

    @pytest.mark.asyncio
    async def test_first_settle_wins(self):
        """Should deliver the first value and ignore later ones."""
        completion = SingleCompletion()

        assert completion.settle("first") is True
        assert completion.settle("second") is False
        assert completion.settled is True
        assert await completion.wait() == "first"

    @pytest.mark.asyncio
    async def test_timer_loses_after_natural_completion(self):
        """Should make a late timer a no-op."""
        loop = asyncio.get_running_loop()
        completion = SingleCompletion(loop)
        loop.call_later(0.05, completion.settle, "timeout")

        completion.settle("done")
        assert await completion.wait() == "done"

        await asyncio.sleep(0.1)
        assert await completion.wait() == "done"

    @pytest.mark.asyncio
    async def test_settle_from_other_thread(self):
        """Should deliver a value settled from a foreign thread."""
        completion = SingleCompletion()

        thread = threading.Thread(target=completion.settle, args=("from-thread",))
        thread.start()

        result = await asyncio.wait_for(completion.wait(), timeout=2.0)
        thread.join()
        assert result == "from-thread"

    @pytest.mark.asyncio
    async def test_concurrent_settles_have_one_winner(self):
        """Should let exactly one of many racing threads win."""
        completion = SingleCompletion()
        wins = []
        barrier = threading.Barrier(8)

        def racer(value):
            barrier.wait()
            if completion.settle(value):
                wins.append(value)

        threads = [threading.Thread(target=racer, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(wins) == 1
        assert await asyncio.wait_for(completion.wait(), timeout=2.0) == wins[0]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_keeps_result(self):
        """Should keep the result available after a waiter is cancelled."""
        completion = SingleCompletion()
        waiter = asyncio.ensure_future(completion.wait())
        await asyncio.sleep(0)
        waiter.cancel()

        completion.settle("value")
        assert await completion.wait() == "value"
