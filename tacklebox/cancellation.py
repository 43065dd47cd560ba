from __future__ import annotations

import asyncio
from typing import Awaitable, List, TypeVar

from tacklebox.errors import CancellationObserved

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation flag, one per job execution.

    Goes from active to cancelled exactly once; repeated cancel() calls are no-ops.
    Tasks poll it between units of work; in-flight I/O is never interrupted.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def throw_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationObserved()

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled()})"


async def gather_or_cancel(*aws: Awaitable[T]) -> List[T]:
    """
    Like asyncio.gather, but when any awaitable raises (or the caller is
    cancelled) the others are cancelled and awaited before the error propagates.
    """
    tasks = [asyncio.ensure_future(a) for a in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
