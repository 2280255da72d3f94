"""Introspection handlers (PING, GET_AVAILABLE_TABS, GET_STATS)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from shared.models.messages import MessageType
from sidecar.config.providers import ProviderRegistry
from sidecar.dispatch.context import RequestContext
from sidecar.dispatch.dispatcher import MessageDispatcher
from sidecar.dispatch.middleware import MetricsMiddleware
from sidecar.flights.coordinator import FlightCoordinator
from sidecar.pool.pool import WorkerContextPool
from sidecar.workflows.runner import WorkflowRunner


@dataclass
class SystemHandlers:
    pool: WorkerContextPool
    coordinator: FlightCoordinator
    providers: ProviderRegistry
    metrics: Optional[MetricsMiddleware] = None
    workflows: Optional[WorkflowRunner] = None

    def register(self, dispatcher: MessageDispatcher) -> None:
        dispatcher.register(MessageType.PING, self.ping)
        dispatcher.register(MessageType.GET_AVAILABLE_TABS, self.available_tabs)
        dispatcher.register(MessageType.GET_STATS, self.stats)

    async def ping(self, payload: Any, ctx: RequestContext) -> str:
        return "pong"

    async def available_tabs(self, payload: Any, ctx: RequestContext) -> List[Dict[str, Any]]:
        provider_key = payload.get("providerKey") if isinstance(payload, dict) else None
        return [context.to_dict() for context in self.pool.list(provider_key)]

    async def stats(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        stats = {
            "providers": self.providers.keys(),
            "pool": self.pool.stats(),
            "flights": self.coordinator.stats(),
            "dispatch": self.metrics.snapshot() if self.metrics is not None else {},
        }
        if self.workflows is not None:
            stats["workflows"] = self.workflows.stats()
        return stats
