"""Stage two of the completion race: extracting the finished response."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Tuple

from sidecar.config.providers import (
    CompletionCheck,
    ObserverConfig,
    ObserverHarvest,
    PollHarvest,
    PollingConfig,
    ProviderConfig,
)
from sidecar.errors import DetectionTimeout, HarvestEmptyResult, SidecarError
from sidecar.hosts.base import ContextHost, HostSignal, WatchSpec
from sidecar.race.models import HarvestReport
from sidecar.race.settle import BranchDeclined, first_wins

LOGGER = logging.getLogger(__name__)


class Harvester:
    """Runs the provider's harvest method against one context."""

    def __init__(self, host: ContextHost, provider: ProviderConfig) -> None:
        self._host = host
        self._provider = provider

    async def harvest(self, context_id: str) -> HarvestReport:
        """Like ``run`` but reports failures instead of raising them."""

        loop = asyncio.get_running_loop()
        started = loop.time()
        method = self._provider.harvest.method
        try:
            text, strategy = await self.run(context_id)
        except SidecarError as exc:
            return HarvestReport(
                success=False,
                strategy=exc.strategy or method,
                method=method,
                duration_ms=int((loop.time() - started) * 1000),
                error=exc,
            )
        return HarvestReport(
            success=True,
            strategy=strategy,
            method=method,
            duration_ms=int((loop.time() - started) * 1000),
            data=text,
        )

    async def run(self, context_id: str) -> Tuple[str, str]:
        """Return ``(text, strategy)`` for the finished response."""

        config = self._provider.harvest
        if isinstance(config, PollHarvest):
            text = await self._poll(context_id, config.polling, decline_on_exhaustion=False)
            return text, "polling"
        if isinstance(config, ObserverHarvest):
            text = await self._observe(context_id, config.observer)
            return text, "observer"
        result = await first_wins(
            {
                "polling": lambda: self._poll(context_id, config.polling, decline_on_exhaustion=True),
                "observer": lambda: self._observe(context_id, config.observer),
            },
            label=f"harvest[{context_id}]",
            exhausted=lambda: DetectionTimeout("no harvest strategy saw completion", strategy="harvest"),
        )
        return result.value, result.winner

    async def _poll(self, context_id: str, polling: PollingConfig, *, decline_on_exhaustion: bool) -> str:
        checks = polling.effective_checks(self._provider.selectors)
        for attempt in range(polling.max_attempts):
            if await self._checks_pass(context_id, checks):
                LOGGER.debug("Polling checks passed on attempt %s for %s", attempt + 1, context_id)
                if polling.stabilization_ms:
                    await asyncio.sleep(polling.stabilization_ms / 1000.0)
                return await self._extract(context_id, "polling")
            if attempt + 1 < polling.max_attempts:
                await asyncio.sleep(polling.delay_for(attempt))
        if decline_on_exhaustion:
            raise BranchDeclined(f"polling exhausted after {polling.max_attempts} attempts")
        raise DetectionTimeout(
            f"completion checks did not pass after {polling.max_attempts} attempts",
            strategy="polling",
        )

    async def _checks_pass(self, context_id: str, checks: List[CompletionCheck]) -> bool:
        for check in checks:
            count = await self._host.query(context_id, self._provider.selectors[check.target])
            if check.kind == "absence" and count > 0:
                return False
            if check.kind == "presence" and count == 0:
                return False
        return True

    async def _observe(self, context_id: str, observer: ObserverConfig) -> str:
        loop = asyncio.get_running_loop()
        marker_selectors = self._provider.selectors[observer.marker_target]
        changed = asyncio.Event()

        def _on_mutation(signal: HostSignal) -> None:
            changed.set()

        spec = WatchSpec(
            kind="marker",
            selectors=tuple(self._provider.selectors[observer.observe_target]),
            options={"markerSelectors": list(marker_selectors)},
        )
        deadline = loop.time() + observer.timeout_ms / 1000.0
        async with await self._host.watch(context_id, spec, _on_mutation):
            while True:
                changed.clear()
                if await self._host.query(context_id, marker_selectors) > 0:
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise DetectionTimeout(
                        f"completion marker not seen within {observer.timeout_ms}ms",
                        strategy="observer",
                        elapsed_ms=observer.timeout_ms,
                    )
                try:
                    await asyncio.wait_for(changed.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue
        LOGGER.debug("Completion marker observed on %s", context_id)
        if observer.stabilization_ms:
            await asyncio.sleep(observer.stabilization_ms / 1000.0)
        return await self._extract(context_id, "observer")

    async def _extract(self, context_id: str, strategy: str) -> str:
        text = await self._host.extract_text(context_id, self._provider.selectors["response_container"])
        if not text or not text.strip():
            raise HarvestEmptyResult("completion detected but the response was empty", strategy=strategy)
        return text.strip()
