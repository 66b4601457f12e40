"""Cooperative run cancellation."""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from consensus.errors import ConsensusCancelled

T = TypeVar("T")


class CancellationToken:
    """External cancel signal checked at every suspension point of a run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ConsensusCancelled("Consensus run cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first.

        On cancellation the in-flight work is cancelled and ConsensusCancelled
        is raised immediately instead of waiting for the call to settle.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task.done():
            return task.result()
        raise ConsensusCancelled("Consensus run cancelled")
