"""Acquisition, reuse, health checking and disposal of worker contexts."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Dict, List, Optional, Set

from sidecar.config.providers import ProviderConfig, ProviderRegistry
from sidecar.errors import AcquisitionError, ConfigurationError, ResponsivenessError
from sidecar.hosts.base import ContextHost, HostInstance
from sidecar.pool.models import ContextState, WorkerContext, _utcnow

LOGGER = logging.getLogger(__name__)


class WorkerContextPool:
    """Hands out host instances per provider without double assignment.

    All state changes happen synchronously between awaits, so a context can be
    BUSY for at most one caller. Acquisition never retries on its own.
    """

    def __init__(
        self,
        host: ContextHost,
        providers: ProviderRegistry,
        *,
        creation_timeout_ms: int = 30000,
        creation_poll_interval_ms: int = 1000,
        probe_timeout_ms: int = 5000,
        health_check_interval_seconds: float = 30.0,
        error_grace_ms: int = 5000,
    ) -> None:
        self._host = host
        self._providers = providers
        self._creation_timeout = creation_timeout_ms / 1000.0
        self._creation_poll_interval = creation_poll_interval_ms / 1000.0
        self._probe_timeout = probe_timeout_ms / 1000.0
        self._health_interval = health_check_interval_seconds
        self._error_grace = error_grace_ms / 1000.0
        self._contexts: Dict[str, WorkerContext] = {}
        self._disposal_timers: Dict[str, asyncio.TimerHandle] = {}
        self._disposal_tasks: Set[asyncio.Task] = set()
        self._health_task: Optional[asyncio.Task] = None

    # Lifecycle ------------------------------------------------------------------

    async def start(self) -> None:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop(), name="pool-health")

    async def stop(self) -> None:
        task, self._health_task = self._health_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        for timer in self._disposal_timers.values():
            timer.cancel()
        self._disposal_timers.clear()
        pending = list(self._disposal_tasks)
        for disposal in pending:
            disposal.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        contexts = list(self._contexts.values())
        self._contexts.clear()
        for context in contexts:
            if context.adopted:
                continue
            await self._close_instance(context.context_id)
        LOGGER.info("Worker context pool stopped (%s contexts dropped)", len(contexts))

    # Acquisition ------------------------------------------------------------------

    async def acquire(self, provider_key: str, *, flight_id: Optional[str] = None) -> WorkerContext:
        try:
            provider = self._providers.get(provider_key)
        except ConfigurationError as exc:
            raise AcquisitionError(str(exc), strategy="lookup") from exc

        context = self._reuse_idle(provider_key, flight_id)
        if context is not None:
            LOGGER.debug("Reusing idle context %s for %s", context.context_id, provider_key)
            return context

        try:
            context = await self._adopt_existing(provider, flight_id)
            if context is not None:
                return context
            return await self._create(provider, flight_id)
        except AcquisitionError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise AcquisitionError(f"host failure while acquiring {provider_key}: {exc}", strategy="host") from exc

    async def discover(self, provider: ProviderConfig) -> List[HostInstance]:
        """Open host instances located under the provider's base URL or hostnames."""

        prefix = "" if provider.hostnames else provider.base_url
        instances = await self._host.find_instances(prefix)
        return [instance for instance in instances if provider.matches_location(instance.url)]

    def _reuse_idle(self, provider_key: str, flight_id: Optional[str]) -> Optional[WorkerContext]:
        for context in self._contexts.values():
            if context.provider_key == provider_key and context.state is ContextState.IDLE:
                self._mark_busy(context, flight_id)
                return context
        return None

    async def _adopt_existing(self, provider: ProviderConfig, flight_id: Optional[str]) -> Optional[WorkerContext]:
        for instance in await self.discover(provider):
            if instance.instance_id in self._contexts:
                continue
            # Claimed before probing so concurrent acquires skip it.
            context = WorkerContext(
                context_id=instance.instance_id,
                provider_key=provider.provider_key,
                location_url=instance.url,
                adopted=True,
            )
            self._contexts[context.context_id] = context
            try:
                alive = await self._probe(context.context_id)
            except BaseException:
                self._forget_claim(context)
                raise
            if alive and context.state is ContextState.CREATING:
                self._mark_busy(context, flight_id)
                LOGGER.info("Adopted existing instance %s for %s", context.context_id, provider.provider_key)
                return context
            self._forget_claim(context)
            LOGGER.debug("Skipping unresponsive instance %s for %s", instance.instance_id, provider.provider_key)
        return None

    def _forget_claim(self, context: WorkerContext) -> None:
        if self._contexts.get(context.context_id) is context and context.state is ContextState.CREATING:
            del self._contexts[context.context_id]

    async def _create(self, provider: ProviderConfig, flight_id: Optional[str]) -> WorkerContext:
        instance = await self._host.open(provider.base_url, background=True)
        context = WorkerContext(
            context_id=instance.instance_id,
            provider_key=provider.provider_key,
            location_url=instance.url or provider.base_url,
        )
        self._contexts[context.context_id] = context
        LOGGER.info("Opened new context %s for %s", context.context_id, provider.provider_key)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._creation_timeout
        try:
            while True:
                if await self._is_ready(context.context_id):
                    break
                if context.state is not ContextState.CREATING:
                    raise AcquisitionError(
                        f"context {context.context_id} left CREATING while loading",
                        strategy="create",
                    )
                remaining = deadline - loop.time()
                if remaining <= 0:
                    self.mark_error(context.context_id, "creation timed out")
                    raise AcquisitionError(
                        f"context for {provider.provider_key} not ready within {int(self._creation_timeout * 1000)}ms",
                        strategy="create",
                        elapsed_ms=int(self._creation_timeout * 1000),
                    )
                await asyncio.sleep(min(self._creation_poll_interval, remaining))
        except asyncio.CancelledError:
            self.mark_error(context.context_id, "acquisition cancelled")
            raise
        if context.state is not ContextState.CREATING:
            raise AcquisitionError(f"context {context.context_id} was discarded while loading", strategy="create")
        self._mark_busy(context, flight_id)
        return context

    async def _is_ready(self, context_id: str) -> bool:
        try:
            loaded = await asyncio.wait_for(self._host.is_loaded(context_id), timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            return False
        except Exception:  # noqa: BLE001
            LOGGER.debug("Load status check failed for %s", context_id, exc_info=True)
            return False
        if not loaded:
            return False
        return await self._probe(context_id)

    def _mark_busy(self, context: WorkerContext, flight_id: Optional[str]) -> None:
        context.state = ContextState.BUSY
        context.flight_id = flight_id
        context.error = None

    # Release & errors -------------------------------------------------------------

    def release(self, context_id: str) -> bool:
        context = self._contexts.get(context_id)
        if context is None or context.state is not ContextState.BUSY:
            return False
        context.state = ContextState.IDLE
        context.flight_id = None
        LOGGER.debug("Released context %s", context_id)
        return True

    def mark_error(self, context_id: str, reason: str) -> bool:
        context = self._contexts.get(context_id)
        if context is None or context.state is ContextState.ERROR:
            return False
        LOGGER.warning("Context %s marked errored: %s", context_id, reason)
        context.state = ContextState.ERROR
        context.error = reason
        context.flight_id = None
        if self._error_grace <= 0:
            self._start_disposal(context_id)
        else:
            loop = asyncio.get_running_loop()
            self._disposal_timers[context_id] = loop.call_later(self._error_grace, self._start_disposal, context_id)
        return True

    def _start_disposal(self, context_id: str) -> None:
        self._disposal_timers.pop(context_id, None)
        task = asyncio.get_running_loop().create_task(self._dispose(context_id))
        self._disposal_tasks.add(task)
        task.add_done_callback(self._disposal_tasks.discard)

    async def _dispose(self, context_id: str) -> None:
        context = self._contexts.get(context_id)
        if context is None or context.state is not ContextState.ERROR:
            return
        del self._contexts[context_id]
        if not context.adopted:
            await self._close_instance(context_id)
        LOGGER.info("Disposed errored context %s", context_id)

    async def _close_instance(self, context_id: str) -> None:
        try:
            await self._host.close(context_id)
        except Exception:  # noqa: BLE001
            LOGGER.warning("Failed to close instance %s", context_id, exc_info=True)

    # Health -------------------------------------------------------------------------

    async def _probe(self, context_id: str) -> bool:
        try:
            alive = await asyncio.wait_for(self._host.ping(context_id), timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            LOGGER.debug("Liveness probe of %s timed out", context_id)
            return False
        except Exception:  # noqa: BLE001
            LOGGER.debug("Liveness probe of %s failed", context_id, exc_info=True)
            return False
        context = self._contexts.get(context_id)
        if alive and context is not None:
            context.last_liveness_check = _utcnow()
        return bool(alive)

    async def verify(self, context: WorkerContext) -> None:
        """Probe an acquired context; raise ``ResponsivenessError`` if it is silent."""

        if not await self._probe(context.context_id):
            raise ResponsivenessError(
                f"context {context.context_id} did not answer the liveness probe",
                strategy="probe",
                elapsed_ms=int(self._probe_timeout * 1000),
            )

    async def check_health(self) -> List[str]:
        """Probe every IDLE context; returns the ids marked errored."""

        idle = [context for context in self._contexts.values() if context.state is ContextState.IDLE]
        if not idle:
            return []
        results = await asyncio.gather(*(self._probe(context.context_id) for context in idle))
        failed: List[str] = []
        for context, alive in zip(idle, results):
            if alive or self._contexts.get(context.context_id) is not context:
                continue
            # A context acquired while the probe was out is no longer ours to judge.
            if context.state is ContextState.IDLE and self.mark_error(context.context_id, "health check failed"):
                failed.append(context.context_id)
        return failed

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_interval)
            try:
                await self.check_health()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Context health check failed")

    # Introspection ------------------------------------------------------------------

    def get(self, context_id: str) -> Optional[WorkerContext]:
        return self._contexts.get(context_id)

    def list(self, provider_key: Optional[str] = None) -> List[WorkerContext]:
        return [
            context
            for context in self._contexts.values()
            if provider_key is None or context.provider_key == provider_key
        ]

    def find_for_provider(self, provider_key: str) -> Optional[WorkerContext]:
        """Best existing context for a provider (IDLE first, then BUSY), without acquiring it."""

        candidates = self.list(provider_key)
        for state in (ContextState.IDLE, ContextState.BUSY):
            for context in candidates:
                if context.state is state:
                    return context
        return None

    def stats(self) -> Dict[str, object]:
        states = Counter(context.state.value for context in self._contexts.values())
        providers = Counter(context.provider_key for context in self._contexts.values())
        return {
            "total": len(self._contexts),
            "byState": {state.value: states.get(state.value, 0) for state in ContextState},
            "byProvider": dict(providers),
            "pendingDisposals": len(self._disposal_timers) + len(self._disposal_tasks),
        }
