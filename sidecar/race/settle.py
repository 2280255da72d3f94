"""Single-assignment result cell and the first-wins race built on it."""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Mapping, Optional, TypeVar

from sidecar.errors import SidecarError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class BranchDeclined(Exception):
    """Raised by a race branch that gives up without settling the race."""


class SettleCell(Generic[T]):
    """Holds the first value or error offered to it; later offers are refused.

    Must be created while an event loop is running.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.settled_by: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self._future.done()

    def resolve(self, value: T, *, by: Optional[str] = None) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        self.settled_by = by
        return True

    def reject(self, error: BaseException, *, by: Optional[str] = None) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(error)
        self.settled_by = by
        return True

    async def wait(self) -> T:
        return await self._future


@dataclass
class RaceResult(Generic[T]):
    value: T
    winner: str
    elapsed_ms: int


BranchFactory = Callable[[], Awaitable[Any]]


async def first_wins(
    branches: Mapping[str, BranchFactory],
    *,
    label: str = "race",
    exhausted: Optional[Callable[[], BaseException]] = None,
) -> RaceResult[Any]:
    """Run ``branches`` concurrently and settle on the first one to finish.

    A branch that finishes with a value or an error settles the race. A branch
    raising ``BranchDeclined`` drops out; if every branch declines the race
    fails with ``exhausted()``. Losing branches are cancelled and awaited
    before this coroutine returns or raises.
    """

    if not branches:
        raise ValueError(f"{label}: no branches to race")

    loop = asyncio.get_running_loop()
    started = loop.time()
    cell: SettleCell[Any] = SettleCell()
    tasks: Dict[str, asyncio.Task] = {}
    declined: set[str] = set()
    tearing_down = False

    def _elapsed_ms() -> int:
        return int((loop.time() - started) * 1000)

    def _on_done(name: str, task: asyncio.Task) -> None:
        if tearing_down:
            if not task.cancelled():
                # Marks a loser's error as retrieved.
                task.exception()
            return
        if task.cancelled():
            error: Optional[BaseException] = BranchDeclined(f"{name} cancelled")
        else:
            error = task.exception()
        if error is None:
            if cell.resolve(task.result(), by=name):
                LOGGER.debug("%s won by %s after %sms", label, name, _elapsed_ms())
            return
        if isinstance(error, BranchDeclined):
            declined.add(name)
            if len(declined) == len(tasks) and not cell.settled:
                failure = exhausted() if exhausted is not None else RuntimeError(f"{label}: every branch declined")
                cell.reject(failure, by=None)
            return
        if isinstance(error, SidecarError):
            if error.strategy is None:
                error.strategy = name
            if error.elapsed_ms is None:
                error.elapsed_ms = _elapsed_ms()
        if cell.reject(error, by=name):
            LOGGER.debug("%s settled with %s from %s", label, type(error).__name__, name)

    for name, factory in branches.items():
        task = asyncio.create_task(factory(), name=f"{label}:{name}")
        tasks[name] = task
    for name, task in tasks.items():
        task.add_done_callback(functools.partial(_on_done, name))

    try:
        value = await cell.wait()
        return RaceResult(value=value, winner=cell.settled_by or "", elapsed_ms=_elapsed_ms())
    finally:
        tearing_down = True
        losers = [task for task in tasks.values() if not task.done()]
        for task in losers:
            task.cancel()
        if losers:
            await asyncio.gather(*losers, return_exceptions=True)
