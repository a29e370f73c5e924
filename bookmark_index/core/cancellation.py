"""Cooperative cancellation shared by all in-flight work of a stage."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """The cancel token fired before the guarded operation completed."""


class CancelToken:
    """One-shot cancellation signal.

    Suspension points wrap their awaitables in guard() so that they return
    promptly once cancel() is called instead of waiting for completion.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled("Operation cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, abandoning it if the token fires first.

        Raises:
            OperationCancelled: If cancel() was called before completion.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled("Operation cancelled")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for future in (task, waiter):
                if not future.done():
                    future.cancel()

        if task in done:
            return task.result()
        raise OperationCancelled("Operation cancelled")
