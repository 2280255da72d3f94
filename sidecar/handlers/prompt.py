"""Prompt execution handlers (EXECUTE_PROMPT, BROADCAST_PROMPT, HARVEST_RESPONSE)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict

from shared.models.messages import (
    BroadcastPromptPayload,
    ExecutePromptPayload,
    HarvestResponsePayload,
    MessageType,
)
from sidecar.dispatch.context import RequestContext
from sidecar.dispatch.dispatcher import MessageDispatcher
from sidecar.dispatch.middleware import validate_payload
from sidecar.errors import AcquisitionError, FlightCancelled, SidecarError, UnexpectedFlightError
from sidecar.flights.coordinator import FlightCoordinator
from sidecar.flights.models import Flight, FlightState
from sidecar.pool.pool import WorkerContextPool
from sidecar.race.engine import CompletionRaceEngine

LOGGER = logging.getLogger(__name__)


@dataclass
class PromptHandlers:
    coordinator: FlightCoordinator
    pool: WorkerContextPool
    races: CompletionRaceEngine

    def register(self, dispatcher: MessageDispatcher) -> None:
        dispatcher.register(MessageType.EXECUTE_PROMPT, self.execute_prompt)
        dispatcher.register(MessageType.BROADCAST_PROMPT, self.broadcast_prompt)
        dispatcher.register(MessageType.HARVEST_RESPONSE, self.harvest_response)

    async def execute_prompt(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(ExecutePromptPayload, ctx.message_type, payload)
        options = request.options
        flight = await self.coordinator.launch(
            request.provider_key,
            request.prompt,
            timeout_ms=options.timeout_ms,
            max_retries=options.max_retries,
            metadata={**options.metadata, "requestId": ctx.request_id},
        )
        if not options.wait:
            return flight.snapshot().to_wire()
        flight = await self.coordinator.wait(flight.flight_id)
        if flight.state is FlightState.COMPLETED:
            return flight.snapshot().to_wire()
        raise _terminal_error(flight)

    async def broadcast_prompt(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(BroadcastPromptPayload, ctx.message_type, payload)
        context = await self.pool.acquire(request.provider_key)
        try:
            await self.races.broadcast(context.context_id, request.provider_key, request.prompt)
        except SidecarError as exc:
            self.pool.mark_error(context.context_id, exc.message)
            raise
        except BaseException:
            self.pool.release(context.context_id)
            raise
        self.pool.release(context.context_id)
        return {"providerKey": request.provider_key, "contextId": context.context_id, "broadcast": True}

    async def harvest_response(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(HarvestResponsePayload, ctx.message_type, payload)
        context = self.pool.find_for_provider(request.provider_key)
        if context is None:
            raise AcquisitionError(f"no open context for provider '{request.provider_key}'", strategy="lookup")
        report = await self.races.harvest(context.context_id, request.provider_key)
        result = report.to_dict()
        result["contextId"] = context.context_id
        return result


def _terminal_error(flight: Flight) -> SidecarError:
    if flight.state is FlightState.CANCELLED:
        error: SidecarError = (
            flight.exception if isinstance(flight.exception, FlightCancelled) else FlightCancelled("flight cancelled")
        )
    elif isinstance(flight.exception, SidecarError):
        error = flight.exception
    else:
        error = UnexpectedFlightError(flight.error.message if flight.error else "flight failed")
    error.details = {**(error.details or {}), "flightId": flight.flight_id, "attempts": flight.attempts}
    return error
