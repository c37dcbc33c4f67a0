"""Minimal action/filter hook bus used to observe and shape chat turns."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


HookCallback = Callable[..., Any]


@dataclass(order=True)
class _Registration:
    priority: int
    sequence: int
    callback: HookCallback = field(compare=False)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class HookBus:
    """Named actions (fire and observe) and filters (chained transforms).

    Callbacks may be plain functions or coroutines. Lower priorities run
    first; ties run in registration order. A failing callback is logged and
    skipped so one observer cannot break a turn.
    """

    def __init__(self) -> None:
        self._actions: dict[str, list[_Registration]] = {}
        self._filters: dict[str, list[_Registration]] = {}
        self._sequence = 0

    def _register(
        self,
        table: dict[str, list[_Registration]],
        name: str,
        callback: HookCallback,
        priority: int,
    ) -> Callable[[], None]:
        self._sequence += 1
        registration = _Registration(priority, self._sequence, callback)
        entries = table.setdefault(name, [])
        entries.append(registration)
        entries.sort()

        def _remove() -> None:
            if registration in entries:
                entries.remove(registration)

        return _remove

    def add_action(
        self, name: str, callback: HookCallback, *, priority: int = 10
    ) -> Callable[[], None]:
        """Register an action callback; returns a function that unregisters it."""

        return self._register(self._actions, name, callback, priority)

    def add_filter(
        self, name: str, callback: HookCallback, *, priority: int = 10
    ) -> Callable[[], None]:
        """Register a filter callback; returns a function that unregisters it."""

        return self._register(self._filters, name, callback, priority)

    def has_filter(self, name: str) -> bool:
        return bool(self._filters.get(name))

    async def do_action(self, name: str, *args: Any) -> None:
        registrations = list(self._actions.get(name, ()))
        if not registrations:
            return

        results = await asyncio.gather(
            *[_call(entry.callback, *args) for entry in registrations],
            return_exceptions=True,
        )
        for entry, result in zip(registrations, results):
            if isinstance(result, Exception):
                logger.error(
                    "Action hook %s failed in %r: %s", name, entry.callback, result
                )

    async def apply_filters(self, name: str, value: Any, *args: Any) -> Any:
        current = value
        for entry in list(self._filters.get(name, ())):
            try:
                current = await _maybe_await(entry.callback(current, *args))
            except Exception as exc:
                logger.error(
                    "Filter hook %s failed in %r: %s", name, entry.callback, exc
                )
        return current


async def _call(callback: HookCallback, *args: Any) -> Any:
    return await _maybe_await(callback(*args))


__all__ = ["HookBus", "HookCallback"]
