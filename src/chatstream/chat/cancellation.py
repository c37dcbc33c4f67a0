"""Cooperative cancellation shared by transport, hydration and streaming."""

from __future__ import annotations

import asyncio


class OperationCancelled(Exception):
    """Raised inside a turn once its token has been cancelled."""


class CancellationToken:
    """One-shot flag that a running turn polls between awaits."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()

    async def wait(self) -> None:
        await self._event.wait()


__all__ = ["CancellationToken", "OperationCancelled"]
