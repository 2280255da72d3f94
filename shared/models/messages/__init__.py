from .envelope import ErrorInfo, InboundMessage, OutboundResponse
from .payloads import (
    AttemptRecoveryPayload,
    BroadcastPromptPayload,
    CancelFlightPayload,
    CheckReadinessPayload,
    ExecuteOptions,
    ExecutePromptPayload,
    ExecuteWorkflowPayload,
    FlightStatusPayload,
    HarvestResponsePayload,
    ProviderPayload,
    RecentFlightsPayload,
    ResetSessionPayload,
    STEP_PLACEHOLDER,
    WorkflowResultPayload,
    WorkflowStatusPayload,
    WorkflowStepPayload,
)
from .types import MessageType

__all__ = [
    "AttemptRecoveryPayload",
    "BroadcastPromptPayload",
    "CancelFlightPayload",
    "CheckReadinessPayload",
    "ErrorInfo",
    "ExecuteOptions",
    "ExecutePromptPayload",
    "ExecuteWorkflowPayload",
    "FlightStatusPayload",
    "HarvestResponsePayload",
    "InboundMessage",
    "MessageType",
    "OutboundResponse",
    "ProviderPayload",
    "RecentFlightsPayload",
    "ResetSessionPayload",
    "STEP_PLACEHOLDER",
    "WorkflowResultPayload",
    "WorkflowStatusPayload",
    "WorkflowStepPayload",
]
