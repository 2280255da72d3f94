"""Payload schemas for the inbound message types."""

from __future__ import annotations

import re
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, model_validator

STEP_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_-]+)(?:\.result)?\s*\}\}")
"""Matches `{{input}}` and `{{<stepId>.result}}` in workflow step prompts."""


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ExecuteOptions(_Payload):
    timeout_ms: Optional[PositiveInt] = Field(default=None, alias="timeoutMs")
    max_retries: Optional[int] = Field(default=None, ge=0, alias="maxRetries")
    metadata: dict[str, Any] = Field(default_factory=dict)
    wait: bool = Field(default=True, description="Block until the flight reaches a terminal state.")


class ExecutePromptPayload(_Payload):
    provider_key: str = Field(..., min_length=1, alias="providerKey")
    prompt: str = Field(..., min_length=1)
    options: ExecuteOptions = Field(default_factory=ExecuteOptions)


class BroadcastPromptPayload(_Payload):
    provider_key: str = Field(..., min_length=1, alias="providerKey")
    prompt: str = Field(..., min_length=1)


class ProviderPayload(_Payload):
    """Payload carrying only the target provider."""

    provider_key: str = Field(..., min_length=1, alias="providerKey")


class HarvestResponsePayload(ProviderPayload):
    pass


class CheckReadinessPayload(ProviderPayload):
    pass


class AttemptRecoveryPayload(ProviderPayload):
    pass


class ResetSessionPayload(ProviderPayload):
    pass


class FlightStatusPayload(_Payload):
    flight_id: str = Field(..., min_length=1, alias="flightId")


class CancelFlightPayload(_Payload):
    flight_id: str = Field(..., min_length=1, alias="flightId")
    reason: str = "cancelled by client"


class RecentFlightsPayload(_Payload):
    limit: PositiveInt = Field(default=10, le=100)


class WorkflowStepPayload(_Payload):
    id: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    provider_key: str = Field(..., min_length=1, alias="providerKey")
    prompt: str = Field(..., min_length=1)
    timeout_ms: Optional[PositiveInt] = Field(default=None, alias="timeoutMs")
    max_retries: Optional[int] = Field(default=None, ge=0, alias="maxRetries")


class ExecuteWorkflowPayload(_Payload):
    workflow_id: str = Field(..., min_length=1, alias="workflowId")
    steps: List[WorkflowStepPayload] = Field(..., min_length=1)
    input: Optional[str] = None
    wait: bool = Field(default=True, description="Block until every step has finished or one has failed.")

    @model_validator(mode="after")
    def _check_references(self) -> "ExecuteWorkflowPayload":
        earlier: set[str] = set()
        for step in self.steps:
            if step.id in earlier:
                raise ValueError(f"duplicate step id '{step.id}'")
            for name in STEP_PLACEHOLDER.findall(step.prompt):
                if name == "input" and self.input is not None:
                    continue
                if name not in earlier:
                    raise ValueError(f"step '{step.id}' references '{name}', which is not an earlier step or the input")
            earlier.add(step.id)
        return self


class WorkflowStatusPayload(_Payload):
    session_id: str = Field(..., min_length=1, alias="sessionId")


class WorkflowResultPayload(WorkflowStatusPayload):
    include_steps: bool = Field(default=False, alias="includeSteps")
