"""Sidecar wiring: builds the engine components and their handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sidecar.config import ProviderRegistry, SidecarSettings, get_settings
from sidecar.dispatch import MessageDispatcher, MetricsMiddleware, ValidationMiddleware, logging_middleware
from sidecar.flights.coordinator import FlightCoordinator
from sidecar.handlers import (
    PAYLOAD_SCHEMAS,
    FlightHandlers,
    PromptHandlers,
    ReadinessHandlers,
    SessionHandlers,
    SystemHandlers,
    WorkflowHandlers,
)
from sidecar.hosts import BridgeHost, ContextHost, DummyHost
from sidecar.pool import WorkerContextPool
from sidecar.race import CompletionRaceEngine
from sidecar.store import InMemorySessionStore, SessionStore
from sidecar.workflows.runner import WorkflowRunner

LOGGER = logging.getLogger(__name__)


@dataclass
class SidecarEngine:
    """Explicitly constructed state owners; nothing here is a module global."""

    settings: SidecarSettings
    providers: ProviderRegistry
    host: ContextHost
    pool: WorkerContextPool
    races: CompletionRaceEngine
    store: SessionStore
    coordinator: FlightCoordinator
    workflows: WorkflowRunner
    dispatcher: MessageDispatcher
    metrics: MetricsMiddleware

    async def start(self) -> None:
        await self.host.start()
        await self.pool.start()
        await self.coordinator.start()
        LOGGER.info(
            "Sidecar engine started (host=%s, providers=%s)",
            type(self.host).__name__,
            ", ".join(self.providers.keys()) or "none",
        )

    async def stop(self) -> None:
        await self.workflows.stop()
        await self.coordinator.stop()
        await self.pool.stop()
        await self.host.stop()
        LOGGER.info("Sidecar engine stopped")


def _build_host(settings: SidecarSettings) -> ContextHost:
    if settings.context_host == "dummy":
        return DummyHost()
    return BridgeHost(request_timeout_ms=settings.bridge_request_timeout_ms)


def build_engine(
    settings: Optional[SidecarSettings] = None,
    *,
    host: Optional[ContextHost] = None,
    providers: Optional[ProviderRegistry] = None,
    store: Optional[SessionStore] = None,
) -> SidecarEngine:
    """Construct, wire and return the engine (not yet started)."""

    settings = settings or get_settings()
    providers = providers or ProviderRegistry.from_settings(settings)
    host = host or _build_host(settings)
    store = store or InMemorySessionStore(
        hot_size=settings.store_hot_size,
        max_records=settings.store_max_records,
    )
    LOGGER.debug("Initialising sidecar engine via %s", type(host).__name__)

    pool = WorkerContextPool(
        host,
        providers,
        creation_timeout_ms=settings.creation_timeout_ms,
        creation_poll_interval_ms=settings.creation_poll_interval_ms,
        probe_timeout_ms=settings.probe_timeout_ms,
        health_check_interval_seconds=settings.health_check_interval_seconds,
        error_grace_ms=settings.error_grace_ms,
    )
    races = CompletionRaceEngine(host, providers, default_timeout_ms=settings.default_timeout_ms)
    coordinator = FlightCoordinator(
        pool,
        races,
        store,
        providers,
        default_timeout_ms=settings.default_timeout_ms,
        default_max_retries=settings.default_max_retries,
        retry_delay_ms=settings.retry_delay_ms,
        completed_retention_seconds=settings.completed_retention_seconds,
        cancelled_retention_seconds=settings.cancelled_retention_seconds,
        sweep_interval_seconds=settings.sweep_interval_seconds,
        terminal_max_age_seconds=settings.terminal_max_age_seconds,
        stuck_max_age_seconds=settings.stuck_max_age_seconds,
    )
    workflows = WorkflowRunner(coordinator, store, providers)

    metrics = MetricsMiddleware(detailed=settings.detailed_metrics)
    dispatcher = MessageDispatcher()
    dispatcher.use(logging_middleware(include_payload=settings.log_payloads))
    dispatcher.use(metrics)
    dispatcher.use(ValidationMiddleware(PAYLOAD_SCHEMAS))

    PromptHandlers(coordinator=coordinator, pool=pool, races=races).register(dispatcher)
    ReadinessHandlers(
        host=host,
        pool=pool,
        providers=providers,
        probe_timeout_ms=settings.probe_timeout_ms,
    ).register(dispatcher)
    SessionHandlers(host=host, pool=pool, providers=providers).register(dispatcher)
    FlightHandlers(coordinator=coordinator, store=store).register(dispatcher)
    WorkflowHandlers(runner=workflows, store=store).register(dispatcher)
    SystemHandlers(
        pool=pool,
        coordinator=coordinator,
        providers=providers,
        metrics=metrics,
        workflows=workflows,
    ).register(dispatcher)

    return SidecarEngine(
        settings=settings,
        providers=providers,
        host=host,
        pool=pool,
        races=races,
        store=store,
        coordinator=coordinator,
        workflows=workflows,
        dispatcher=dispatcher,
        metrics=metrics,
    )
