"""Domain handlers registered on the message dispatcher."""

from shared.models.messages import (
    AttemptRecoveryPayload,
    BroadcastPromptPayload,
    CancelFlightPayload,
    CheckReadinessPayload,
    ExecutePromptPayload,
    ExecuteWorkflowPayload,
    FlightStatusPayload,
    HarvestResponsePayload,
    MessageType,
    RecentFlightsPayload,
    ResetSessionPayload,
    WorkflowResultPayload,
    WorkflowStatusPayload,
)

from .flights import FlightHandlers
from .prompt import PromptHandlers
from .readiness import ReadinessHandlers
from .session import SessionHandlers
from .system import SystemHandlers
from .workflows import WorkflowHandlers

PAYLOAD_SCHEMAS = {
    MessageType.EXECUTE_PROMPT: ExecutePromptPayload,
    MessageType.BROADCAST_PROMPT: BroadcastPromptPayload,
    MessageType.HARVEST_RESPONSE: HarvestResponsePayload,
    MessageType.CHECK_READINESS: CheckReadinessPayload,
    MessageType.ATTEMPT_RECOVERY: AttemptRecoveryPayload,
    MessageType.RESET_SESSION: ResetSessionPayload,
    MessageType.FLIGHT_STATUS: FlightStatusPayload,
    MessageType.CANCEL_FLIGHT: CancelFlightPayload,
    MessageType.GET_RECENT_FLIGHTS: RecentFlightsPayload,
    MessageType.EXECUTE_WORKFLOW: ExecuteWorkflowPayload,
    MessageType.WORKFLOW_STATUS: WorkflowStatusPayload,
    MessageType.WORKFLOW_RESULT: WorkflowResultPayload,
}

__all__ = [
    "FlightHandlers",
    "PAYLOAD_SCHEMAS",
    "PromptHandlers",
    "ReadinessHandlers",
    "SessionHandlers",
    "SystemHandlers",
    "WorkflowHandlers",
]
