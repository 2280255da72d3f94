"""In-memory context host for offline development and tests."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union

from sidecar.config.providers import BroadcastStep, FillStep, WaitStep
from sidecar.errors import BroadcastError
from sidecar.hosts.base import ContextHost, HostInstance, HostSignal, SignalCallback, WatchHandle, WatchSpec

LOGGER = logging.getLogger(__name__)


@dataclass
class DummyPage:
    instance_id: str
    url: str
    loaded: bool = True
    responsive: bool = True
    hang_ping: bool = False
    elements: dict[str, list[str]] = field(default_factory=dict)
    inputs: dict[str, str] = field(default_factory=dict)
    closed: bool = False
    reloads: int = 0


PerformHook = Callable[["DummyPage", Sequence[BroadcastStep], Mapping[str, str]], Union[None, Awaitable[None]]]


class DummyHost(ContextHost):
    """Scripted host: pages, selector contents and signals are driven by the caller."""

    def __init__(self, *, open_loaded: bool = True, open_responsive: bool = True) -> None:
        self.pages: dict[str, DummyPage] = {}
        self.open_loaded = open_loaded
        self.open_responsive = open_responsive
        self.on_perform: Optional[PerformHook] = None
        self.on_open: Optional[Callable[[DummyPage], None]] = None
        self.perform_error: Optional[str] = None
        self.performed: list[tuple[str, list[BroadcastStep], dict[str, str]]] = []
        self.opened: list[str] = []
        self._ids = itertools.count(1)
        self._watch_ids = itertools.count(1)
        self._watches: dict[str, WatchHandle] = {}

    # Scripting helpers -------------------------------------------------

    def add_page(self, url: str, *, loaded: bool = True, responsive: bool = True) -> DummyPage:
        page = DummyPage(instance_id=f"tab-{next(self._ids)}", url=url, loaded=loaded, responsive=responsive)
        self.pages[page.instance_id] = page
        return page

    def page(self, instance_id: str) -> DummyPage:
        page = self.pages.get(instance_id)
        if page is None or page.closed:
            raise LookupError(f"no such instance {instance_id}")
        return page

    def emit(self, instance_id: str, kind: str, data: Optional[dict[str, Any]] = None) -> int:
        """Deliver a signal to every active watch of ``kind`` on the instance."""

        signal = HostSignal(kind=kind, instance_id=instance_id, data=dict(data or {}))
        delivered = 0
        for handle in list(self._watches.values()):
            if handle.instance_id == instance_id and handle.spec.kind == kind:
                if handle.deliver(signal):
                    delivered += 1
        return delivered

    def mutate(self, instance_id: str, selector: str, texts: Optional[list[str]]) -> None:
        """Replace the elements matching ``selector``; ``None`` removes them."""

        page = self.page(instance_id)
        if texts is None:
            page.elements.pop(selector, None)
        else:
            page.elements[selector] = list(texts)
        self.emit(instance_id, "marker", {"selector": selector})

    @property
    def active_watches(self) -> list[WatchHandle]:
        return [handle for handle in self._watches.values() if handle.active]

    # ContextHost ------------------------------------------------------------

    async def find_instances(self, url_prefix: str) -> list[HostInstance]:
        return [
            HostInstance(instance_id=page.instance_id, url=page.url, loaded=page.loaded)
            for page in self.pages.values()
            if not page.closed and page.url.startswith(url_prefix)
        ]

    async def open(self, url: str, *, background: bool = True) -> HostInstance:
        page = self.add_page(url, loaded=self.open_loaded, responsive=self.open_responsive)
        self.opened.append(page.instance_id)
        LOGGER.debug("Dummy host opened %s at %s (background=%s)", page.instance_id, url, background)
        if self.on_open is not None:
            self.on_open(page)
        return HostInstance(instance_id=page.instance_id, url=url, loaded=page.loaded)

    async def is_loaded(self, instance_id: str) -> bool:
        return self.page(instance_id).loaded

    async def ping(self, instance_id: str) -> bool:
        page = self.page(instance_id)
        if page.hang_ping:
            await asyncio.sleep(3600)
        return page.responsive

    async def close(self, instance_id: str) -> None:
        page = self.pages.get(instance_id)
        if page is None:
            return
        page.closed = True
        for handle in list(self._watches.values()):
            if handle.instance_id == instance_id:
                await handle.dispose()

    async def reload(self, instance_id: str) -> None:
        page = self.page(instance_id)
        page.reloads += 1
        page.inputs.clear()

    async def perform(
        self,
        instance_id: str,
        steps: Sequence[BroadcastStep],
        *,
        variables: Mapping[str, str],
        selectors: Mapping[str, Sequence[str]],
    ) -> None:
        page = self.page(instance_id)
        if self.perform_error:
            raise BroadcastError(self.perform_error)
        for step in steps:
            if isinstance(step, WaitStep):
                continue
            if not any(page.elements.get(selector) for selector in selectors.get(step.target, ())):
                raise BroadcastError(f"{step.action} target '{step.target}' not found")
            if isinstance(step, FillStep):
                value = step.value
                for name, replacement in variables.items():
                    value = value.replace("{{" + name + "}}", replacement)
                page.inputs[step.target] = value
        self.performed.append((instance_id, list(steps), dict(variables)))
        if self.on_perform is not None:
            outcome = self.on_perform(page, steps, variables)
            if inspect.isawaitable(outcome):
                await outcome

    async def query(self, instance_id: str, selectors: Sequence[str]) -> int:
        page = self.page(instance_id)
        return sum(len(page.elements.get(selector, ())) for selector in selectors)

    async def extract_text(self, instance_id: str, selectors: Sequence[str]) -> Optional[str]:
        page = self.page(instance_id)
        for selector in selectors:
            texts = page.elements.get(selector)
            if texts:
                return texts[-1]
        return None

    async def watch(self, instance_id: str, spec: WatchSpec, callback: SignalCallback) -> WatchHandle:
        self.page(instance_id)
        handle = WatchHandle(
            f"watch-{next(self._watch_ids)}",
            instance_id,
            spec,
            callback,
            on_dispose=self._forget_watch,
        )
        self._watches[handle.watch_id] = handle
        return handle

    async def _forget_watch(self, handle: WatchHandle) -> None:
        self._watches.pop(handle.watch_id, None)
