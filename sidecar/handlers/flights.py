"""Flight introspection handlers (FLIGHT_STATUS, CANCEL_FLIGHT, GET_RECENT_FLIGHTS)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from shared.models.messages import CancelFlightPayload, FlightStatusPayload, MessageType, RecentFlightsPayload
from sidecar.dispatch.context import RequestContext
from sidecar.dispatch.dispatcher import MessageDispatcher
from sidecar.dispatch.middleware import validate_payload
from sidecar.errors import FlightNotFound
from sidecar.flights.coordinator import FlightCoordinator
from sidecar.store.base import SessionStore


@dataclass
class FlightHandlers:
    coordinator: FlightCoordinator
    store: SessionStore

    def register(self, dispatcher: MessageDispatcher) -> None:
        dispatcher.register(MessageType.FLIGHT_STATUS, self.flight_status)
        dispatcher.register(MessageType.CANCEL_FLIGHT, self.cancel_flight)
        dispatcher.register(MessageType.GET_RECENT_FLIGHTS, self.recent_flights)

    async def flight_status(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(FlightStatusPayload, ctx.message_type, payload)
        flight = self.coordinator.get(request.flight_id)
        if flight is not None:
            return flight.snapshot().to_wire()
        snapshot = await self.store.get(request.flight_id)
        if snapshot is None:
            raise FlightNotFound(f"flight {request.flight_id} not found")
        return snapshot.to_wire()

    async def cancel_flight(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(CancelFlightPayload, ctx.message_type, payload)
        cancelled = await self.coordinator.cancel(request.flight_id, request.reason)
        flight = self.coordinator.get(request.flight_id)
        return {
            "flightId": request.flight_id,
            "cancelled": cancelled,
            "state": flight.state.value if flight is not None else None,
        }

    async def recent_flights(self, payload: Any, ctx: RequestContext) -> List[Dict[str, Any]]:
        request = validate_payload(RecentFlightsPayload, ctx.message_type, payload)
        return [snapshot.to_wire() for snapshot in await self.store.list_recent(request.limit)]
