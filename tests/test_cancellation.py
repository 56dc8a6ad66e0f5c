"""
Cancellation Token Tests
========================

Tests cover:
1. Token state and cancel-once semantics
2. Early wake-up from token.sleep()
3. iterate_until_cancelled interrupting a blocked stream and closing it
"""

import asyncio

import pytest

from autoforge.cancellation import CancellationToken, iterate_until_cancelled
from autoforge.errors import AbortError


class TestCancellationToken:
    def test_initial_state(self):
        token = CancellationToken()
        assert token.cancelled is False
        token.raise_if_cancelled()

    def test_cancel_is_sticky(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")

        assert token.cancelled is True
        assert token.reason == "first"
        with pytest.raises(AbortError, match="first"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_sleep_times_out_without_cancel(self):
        token = CancellationToken()
        assert await token.sleep(0.01) is False

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_cancel(self):
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel)

        started = loop.time()
        assert await token.sleep(10) is True
        assert loop.time() - started < 5

    @pytest.mark.asyncio
    async def test_sleep_zero(self):
        token = CancellationToken()
        assert await token.sleep(0) is False
        token.cancel()
        assert await token.sleep(0) is True


# =============================================================================
# iterate_until_cancelled
# =============================================================================

class TestIterateUntilCancelled:
    @pytest.mark.asyncio
    async def test_passes_items_through(self):
        async def stream():
            for i in range(3):
                yield i

        items = [i async for i in iterate_until_cancelled(stream(), CancellationToken())]
        assert items == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_no_token(self):
        async def stream():
            yield "a"

        assert [i async for i in iterate_until_cancelled(stream(), None)] == ["a"]

    @pytest.mark.asyncio
    async def test_cancel_interrupts_blocked_read(self):
        token = CancellationToken()
        closed = asyncio.Event()
        received = []

        async def stream():
            try:
                yield "first"
                await asyncio.Event().wait()
                yield "never"
            finally:
                closed.set()

        async def consume():
            async for item in iterate_until_cancelled(stream(), token):
                received.append(item)

        task = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0)
        token.cancel("stop now")

        with pytest.raises(AbortError, match="stop now"):
            await task
        assert received == ["first"]
        assert closed.is_set()

    @pytest.mark.asyncio
    async def test_already_cancelled_token_reads_nothing(self):
        token = CancellationToken()
        token.cancel()

        async def stream():
            yield "a"

        with pytest.raises(AbortError):
            async for _ in iterate_until_cancelled(stream(), token):
                pass

    @pytest.mark.asyncio
    async def test_stream_errors_propagate(self):
        async def stream():
            yield "a"
            raise RuntimeError("delegate crashed")

        with pytest.raises(RuntimeError, match="delegate crashed"):
            async for _ in iterate_until_cancelled(stream(), CancellationToken()):
                pass
