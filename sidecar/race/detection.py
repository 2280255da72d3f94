"""Stage one of the completion race: deciding that the remote side finished."""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from sidecar.config.providers import ProviderConfig
from sidecar.errors import DetectionTimeout
from sidecar.hosts.base import ContextHost, HostSignal, WatchHandle, WatchSpec
from sidecar.race.models import CompletionSignal
from sidecar.race.settle import RaceResult, first_wins

LOGGER = logging.getLogger(__name__)

SIGNAL_BRANCHES = ("network", "structural", "explicit")


@dataclass
class _Branch:
    name: str
    queue: "asyncio.Queue[HostSignal]"
    handle: Optional[WatchHandle] = None


class DetectionRace:
    """Races network, structural and explicit signals against a hard timeout.

    Watches are registered by ``arm()`` so signals raised while the prompt is
    being broadcast are queued rather than lost. Every branch disposes its own
    watch when it finishes or is cancelled, and the arming scope disposes
    whatever is left on exit.
    """

    def __init__(
        self,
        host: ContextHost,
        context_id: str,
        provider: ProviderConfig,
        *,
        flight_id: Optional[str],
        timeout_ms: int,
    ) -> None:
        self._host = host
        self._context_id = context_id
        self._provider = provider
        self._flight_id = flight_id
        self._timeout_ms = timeout_ms
        self._timing = provider.detection
        hints = self._timing.structural_hints
        self._hint_pattern: Optional[re.Pattern[str]] = (
            re.compile("|".join(map(re.escape, hints)), re.IGNORECASE) if hints else None
        )
        self._branches: List[_Branch] = []
        self._armed_at: Optional[float] = None

    @property
    def handles(self) -> List[WatchHandle]:
        return [branch.handle for branch in self._branches if branch.handle is not None]

    @asynccontextmanager
    async def arm(self) -> AsyncIterator["DetectionRace"]:
        self._armed_at = asyncio.get_running_loop().time()
        try:
            for name in SIGNAL_BRANCHES:
                branch = _Branch(name=name, queue=asyncio.Queue())
                self._branches.append(branch)
                try:
                    branch.handle = await self._host.watch(
                        self._context_id,
                        self._watch_spec(name),
                        branch.queue.put_nowait,
                    )
                except Exception:  # noqa: BLE001
                    LOGGER.warning(
                        "Could not arm %s detection on %s; branch disabled",
                        name,
                        self._context_id,
                        exc_info=True,
                    )
            yield self
        finally:
            for branch in self._branches:
                if branch.handle is not None:
                    await branch.handle.dispose()

    async def wait(self) -> RaceResult[CompletionSignal]:
        if self._armed_at is None:
            raise RuntimeError("detection race must be armed before waiting")
        branches = {
            branch.name: (lambda branch=branch: self._await_signal(branch))
            for branch in self._branches
            if branch.handle is not None
        }
        branches["timeout"] = self._timeout
        return await first_wins(
            branches,
            label=f"detection[{self._flight_id or self._context_id}]",
            exhausted=lambda: DetectionTimeout("every detection strategy declined", strategy="detection"),
        )

    def _watch_spec(self, kind: str) -> WatchSpec:
        timing = self._timing
        if kind == "network":
            options = {
                "contentTypes": list(timing.network_content_types),
                "urlPatterns": list(timing.network_url_patterns),
            }
        elif kind == "structural":
            options = {
                "minText": timing.structural_min_text,
                "hints": list(timing.structural_hints),
                "completionAttributes": list(timing.completion_attributes),
            }
        else:
            options = {}
        return WatchSpec(
            kind=kind,
            flight_id=self._flight_id,
            selectors=tuple(self._provider.selectors["response_container"]),
            options=options,
        )

    async def _await_signal(self, branch: _Branch) -> CompletionSignal:
        try:
            while True:
                signal = await branch.queue.get()
                if self._matches(branch.name, signal):
                    break
                LOGGER.debug("Ignoring %s signal on %s: %s", branch.name, self._context_id, signal.data)
            settle_ms = self._settle_ms(branch.name)
            if settle_ms:
                await asyncio.sleep(settle_ms / 1000.0)
            return CompletionSignal(
                source=branch.name,
                flight_id=self._flight_id,
                observed_at=signal.observed_at,
                metadata=dict(signal.data),
            )
        finally:
            if branch.handle is not None:
                await branch.handle.dispose()

    async def _timeout(self) -> CompletionSignal:
        loop = asyncio.get_running_loop()
        remaining = self._timeout_ms / 1000.0 - (loop.time() - (self._armed_at or loop.time()))
        if remaining > 0:
            await asyncio.sleep(remaining)
        raise DetectionTimeout(
            f"no completion signal within {self._timeout_ms}ms",
            strategy="timeout",
            elapsed_ms=self._timeout_ms,
        )

    def _settle_ms(self, name: str) -> int:
        if name == "network":
            return self._timing.network_settle_ms
        if name == "structural":
            return self._timing.structural_settle_ms
        return 0

    def _matches(self, name: str, signal: HostSignal) -> bool:
        if self._flight_id and signal.data.get("flightId") not in (None, self._flight_id):
            return False
        if name == "network":
            return self._network_matches(signal)
        if name == "structural":
            return self._structural_matches(signal)
        return True

    def _network_matches(self, signal: HostSignal) -> bool:
        data = signal.data
        status = data.get("status")
        if status is not None:
            try:
                if not 200 <= int(status) < 300:
                    return False
            except (TypeError, ValueError):
                return False
        content_type = str(data.get("contentType") or "").lower()
        content_types = self._timing.network_content_types
        if content_types and not any(pattern in content_type for pattern in content_types):
            return False
        patterns = self._timing.network_url_patterns
        if patterns:
            url = str(data.get("url") or "")
            return any(pattern in url for pattern in patterns)
        return True

    def _structural_matches(self, signal: HostSignal) -> bool:
        data = signal.data
        try:
            text_length = int(data.get("textLength") or 0)
        except (TypeError, ValueError):
            text_length = 0
        if text_length >= self._timing.structural_min_text:
            return True
        if self._hint_pattern is not None:
            for key in ("className", "id"):
                value = data.get(key)
                if value and self._hint_pattern.search(str(value)):
                    return True
        attribute = data.get("attribute")
        return bool(attribute) and attribute in self._timing.completion_attributes
