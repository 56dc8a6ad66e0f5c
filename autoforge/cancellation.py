"""
Cancellation Tokens
===================

Cooperative cancellation for delegate streams.

A CancellationToken is opened by the state machine when the Action phase
starts and stored on the Execution. Triggering it interrupts the in-flight
delegate stream at its current suspension point: the pending read is
cancelled, the stream is closed and AbortError is raised to the consumer.

Usage:
    token = CancellationToken()
    async for message in iterate_until_cancelled(stream, token):
        ...
    # elsewhere
    token.cancel()
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterable, AsyncIterator, TypeVar

from autoforge.errors import AbortError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    One-shot cancellation signal shared between a stream and its owner.

    Once cancelled a token stays cancelled; a fresh token is opened for
    every delegate call.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Trigger the token. Repeated calls are no-ops."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AbortError(self.reason or "Delegate stream aborted")

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep for up to `seconds`, waking early on cancellation.

        Returns:
            True if the token was cancelled before or during the sleep
        """
        if self._event.is_set():
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


async def iterate_until_cancelled(
    stream: AsyncIterable[T],
    token: CancellationToken | None,
) -> AsyncIterator[T]:
    """
    Yield items from `stream` until it ends or `token` fires.

    Each read from the stream is raced against the token, so cancellation
    takes effect even while the stream is blocked waiting for its next item.

    Raises:
        AbortError: when the token fires before the stream is exhausted
    """
    iterator = stream.__aiter__()

    if token is None:
        try:
            async for item in iterator:
                yield item
        finally:
            await _close_iterator(iterator)
        return

    cancel_waiter = asyncio.ensure_future(token.wait())
    pending_read: asyncio.Future | None = None
    try:
        while True:
            token.raise_if_cancelled()
            pending_read = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait(
                {pending_read, cancel_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if pending_read not in done:
                _logger.debug("Cancellation token fired while awaiting delegate stream")
                pending_read.cancel()
                await asyncio.gather(pending_read, return_exceptions=True)
                pending_read = None
                raise AbortError(token.reason or "Delegate stream aborted")

            read, pending_read = pending_read, None
            try:
                item = read.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        cancel_waiter.cancel()
        if pending_read is not None and not pending_read.done():
            pending_read.cancel()
            await asyncio.gather(pending_read, return_exceptions=True)
        await _close_iterator(iterator)


async def _close_iterator(iterator: AsyncIterator) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except RuntimeError as e:
        # Closing a generator that is still running elsewhere
        _logger.warning("Failed to close delegate stream: %s", e)
