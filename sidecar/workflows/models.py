"""Workflow sessions: ordered prompt steps run as consecutive flights."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shared.models.messages import STEP_PLACEHOLDER, ErrorInfo
from sidecar.flights.models import FlightState, _utcnow


class WorkflowState(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkflowStep(_Record):
    step_id: str
    provider_key: str
    prompt: str
    timeout_ms: Optional[int] = None
    max_retries: Optional[int] = None


class StepOutcome(_Record):
    """What one step's flight produced."""

    step_id: str
    provider_key: str
    prompt: str
    flight_id: str
    state: FlightState
    result: Optional[str] = None
    winner: Optional[str] = None
    elapsed_ms: Optional[int] = None
    attempts: int = 1
    error: Optional[ErrorInfo] = None
    finished_at: datetime = Field(default_factory=_utcnow)


class WorkflowRecord(_Record):
    session_id: str
    workflow_id: str
    state: WorkflowState = WorkflowState.RUNNING
    steps: List[WorkflowStep]
    outcomes: List[StepOutcome] = Field(default_factory=list)
    current_step: int = 0
    start_time: datetime = Field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    input: Optional[str] = None
    error: Optional[ErrorInfo] = None

    @property
    def terminal(self) -> bool:
        return self.state is not WorkflowState.RUNNING

    def results(self) -> Dict[str, str]:
        return {
            outcome.step_id: outcome.result or ""
            for outcome in self.outcomes
            if outcome.state is FlightState.COMPLETED
        }

    def render_prompt(self, step: WorkflowStep) -> str:
        """Substitute ``{{input}}`` and ``{{<stepId>.result}}`` placeholders."""

        values = self.results()
        if self.input is not None:
            values.setdefault("input", self.input)

        def _value(match: re.Match[str]) -> str:
            return values.get(match.group(1), match.group(0))

        return STEP_PLACEHOLDER.sub(_value, step.prompt)

    def status_view(self, *, active: bool) -> Dict[str, Any]:
        view: Dict[str, Any] = {
            "sessionId": self.session_id,
            "workflowId": self.workflow_id,
            "status": self.state.value,
            "currentStep": self.current_step,
            "totalSteps": len(self.steps),
            "completedSteps": len(self.results()),
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "isActive": active,
        }
        if self.error is not None:
            view["error"] = self.error.model_dump(by_alias=True, exclude_none=True)
        return view

    def result_view(self, *, include_steps: bool = False) -> Dict[str, Any]:
        view: Dict[str, Any] = {
            "sessionId": self.session_id,
            "workflowId": self.workflow_id,
            "status": self.state.value,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "durationMs": (
                int((self.end_time - self.start_time).total_seconds() * 1000) if self.end_time else None
            ),
            "result": self.results(),
        }
        if self.error is not None:
            view["error"] = self.error.model_dump(by_alias=True, exclude_none=True)
        if include_steps:
            view["steps"] = [outcome.model_dump(by_alias=True, mode="json") for outcome in self.outcomes]
        return view
