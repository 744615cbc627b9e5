"""Cooperative cancellation for streaming runs."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """A flag shared between a caller and a running generation.

    Once cancelled, parsers stop consuming chunks and the pipeline stops
    invoking progress callbacks. State already built is left intact.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def is_cancelled(token: CancellationToken | None) -> bool:
    return token is not None and token.cancelled
