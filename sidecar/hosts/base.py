"""Abstractions over the environment that hosts worker contexts."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional, Sequence

from sidecar.config.providers import BroadcastStep

LOGGER = logging.getLogger(__name__)

WatchKind = Literal["network", "structural", "explicit", "marker"]


@dataclass
class HostInstance:
    """An addressable page living inside the host (a browser tab)."""

    instance_id: str
    url: Optional[str] = None
    title: Optional[str] = None
    loaded: bool = False


@dataclass(frozen=True)
class WatchSpec:
    kind: WatchKind
    flight_id: Optional[str] = None
    selectors: tuple[str, ...] = ()
    options: Mapping[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "flightId": self.flight_id,
            "selectors": list(self.selectors),
            "options": dict(self.options),
        }


@dataclass
class HostSignal:
    kind: str
    instance_id: str
    data: dict[str, Any] = field(default_factory=dict)
    observed_at: float = field(default_factory=time.time)


SignalCallback = Callable[[HostSignal], None]


class WatchHandle:
    """Registration of a signal callback on one instance.

    ``dispose`` detaches the callback before asking the host to tear down its
    side, so signals arriving while the host is being notified are dropped.
    """

    def __init__(
        self,
        watch_id: str,
        instance_id: str,
        spec: WatchSpec,
        callback: SignalCallback,
        on_dispose: Optional[Callable[["WatchHandle"], Awaitable[None]]] = None,
    ) -> None:
        self.watch_id = watch_id
        self.instance_id = instance_id
        self.spec = spec
        self._callback: Optional[SignalCallback] = callback
        self._on_dispose = on_dispose
        self._disposed = False

    @property
    def active(self) -> bool:
        return not self._disposed

    def deliver(self, signal: HostSignal) -> bool:
        callback = self._callback
        if self._disposed or callback is None:
            LOGGER.debug("Dropping %s signal for disposed watch %s", signal.kind, self.watch_id)
            return False
        callback(signal)
        return True

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._callback = None
        on_dispose, self._on_dispose = self._on_dispose, None
        if on_dispose is None:
            return
        try:
            await on_dispose(self)
        except Exception:  # noqa: BLE001
            LOGGER.warning("Host-side teardown of watch %s failed", self.watch_id, exc_info=True)

    async def __aenter__(self) -> "WatchHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()


class ContextHost(ABC):
    """Operations the engine needs from the host-injected environment."""

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def find_instances(self, url_prefix: str) -> list[HostInstance]:
        ...

    @abstractmethod
    async def open(self, url: str, *, background: bool = True) -> HostInstance:
        ...

    @abstractmethod
    async def is_loaded(self, instance_id: str) -> bool:
        ...

    @abstractmethod
    async def ping(self, instance_id: str) -> bool:
        ...

    @abstractmethod
    async def close(self, instance_id: str) -> None:
        ...

    @abstractmethod
    async def reload(self, instance_id: str) -> None:
        ...

    @abstractmethod
    async def perform(
        self,
        instance_id: str,
        steps: Sequence[BroadcastStep],
        *,
        variables: Mapping[str, str],
        selectors: Mapping[str, Sequence[str]],
    ) -> None:
        """Run scripted steps in the instance; raise ``BroadcastError`` on failure.

        Step targets name groups in ``selectors``.
        """

    @abstractmethod
    async def query(self, instance_id: str, selectors: Sequence[str]) -> int:
        """Return how many elements match any of ``selectors``."""

    @abstractmethod
    async def extract_text(self, instance_id: str, selectors: Sequence[str]) -> Optional[str]:
        """Return the text of the last element matching ``selectors``."""

    @abstractmethod
    async def watch(self, instance_id: str, spec: WatchSpec, callback: SignalCallback) -> WatchHandle:
        ...
