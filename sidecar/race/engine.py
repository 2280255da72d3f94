"""Broadcast, detect and harvest in one attempt."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sidecar.config.providers import ProviderConfig, ProviderRegistry
from sidecar.errors import BroadcastError, SidecarError
from sidecar.hosts.base import ContextHost
from sidecar.race.detection import DetectionRace
from sidecar.race.harvest import Harvester
from sidecar.race.models import HarvestReport, RaceOutcome

LOGGER = logging.getLogger(__name__)


class CompletionRaceEngine:
    """Drives one prompt through an acquired context."""

    def __init__(self, host: ContextHost, providers: ProviderRegistry, *, default_timeout_ms: int = 30000) -> None:
        self._host = host
        self._providers = providers
        self._default_timeout_ms = default_timeout_ms

    async def execute(
        self,
        context_id: str,
        provider_key: str,
        *,
        prompt: str,
        flight_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> RaceOutcome:
        provider = self._providers.get(provider_key)
        timeout_ms = timeout_ms or provider.timeout_ms or self._default_timeout_ms
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            detection = DetectionRace(
                self._host,
                context_id,
                provider,
                flight_id=flight_id,
                timeout_ms=timeout_ms,
            )
            async with detection.arm():
                await self._broadcast(context_id, provider, prompt)
                detected = await detection.wait()
            LOGGER.info(
                "Completion of %s detected by %s after %sms",
                flight_id or context_id,
                detected.winner,
                detected.elapsed_ms,
            )
            text, strategy = await Harvester(self._host, provider).run(context_id)
        except SidecarError as exc:
            if exc.elapsed_ms is None:
                exc.elapsed_ms = int((loop.time() - started) * 1000)
            raise
        return RaceOutcome(
            text=text,
            signal=detected.value,
            harvest_strategy=strategy,
            detection_elapsed_ms=detected.elapsed_ms,
            elapsed_ms=int((loop.time() - started) * 1000),
        )

    async def broadcast(self, context_id: str, provider_key: str, prompt: str) -> None:
        await self._broadcast(context_id, self._providers.get(provider_key), prompt)

    async def harvest(self, context_id: str, provider_key: str) -> HarvestReport:
        return await Harvester(self._host, self._providers.get(provider_key)).harvest(context_id)

    async def _broadcast(self, context_id: str, provider: ProviderConfig, prompt: str) -> None:
        try:
            await self._host.perform(
                context_id,
                provider.broadcast,
                variables={"prompt": prompt},
                selectors=provider.selectors,
            )
        except BroadcastError as exc:
            exc.strategy = exc.strategy or "broadcast"
            raise
        except Exception as exc:  # noqa: BLE001
            raise BroadcastError(f"broadcast to {provider.provider_key} failed: {exc}", strategy="broadcast") from exc
        LOGGER.debug("Broadcast %s steps into %s", len(provider.broadcast), context_id)
