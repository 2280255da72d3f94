"""Workflow handlers (EXECUTE_WORKFLOW, WORKFLOW_STATUS, WORKFLOW_RESULT)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from shared.models.messages import (
    ExecuteWorkflowPayload,
    MessageType,
    WorkflowResultPayload,
    WorkflowStatusPayload,
)
from sidecar.dispatch.context import RequestContext
from sidecar.dispatch.dispatcher import MessageDispatcher
from sidecar.dispatch.middleware import validate_payload
from sidecar.errors import WorkflowNotFound, WorkflowStepFailed, WorkflowStillRunning
from sidecar.store.base import SessionStore
from sidecar.workflows import WorkflowState, WorkflowStep
from sidecar.workflows.runner import WorkflowRunner


@dataclass
class WorkflowHandlers:
    runner: WorkflowRunner
    store: SessionStore

    def register(self, dispatcher: MessageDispatcher) -> None:
        dispatcher.register(MessageType.EXECUTE_WORKFLOW, self.execute_workflow)
        dispatcher.register(MessageType.WORKFLOW_STATUS, self.workflow_status)
        dispatcher.register(MessageType.WORKFLOW_RESULT, self.workflow_result)

    async def execute_workflow(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(ExecuteWorkflowPayload, ctx.message_type, payload)
        steps = [
            WorkflowStep(
                step_id=step.id,
                provider_key=step.provider_key,
                prompt=step.prompt,
                timeout_ms=step.timeout_ms,
                max_retries=step.max_retries,
            )
            for step in request.steps
        ]
        record = await self.runner.start(request.workflow_id, steps, input=request.input)
        if not request.wait:
            return record.status_view(active=True)

        record = await self.runner.wait(record.session_id)
        if record.state is not WorkflowState.COMPLETED:
            error = record.error
            details = dict(error.details or {}) if error is not None else {}
            details["sessionId"] = record.session_id
            raise WorkflowStepFailed(
                error.message if error is not None else f"workflow session {record.session_id} ended {record.state.value}",
                strategy=error.strategy if error is not None else None,
                details=details,
            )
        return {
            "sessionId": record.session_id,
            "workflowId": record.workflow_id,
            "status": record.state.value,
            "result": record.results(),
        }

    async def workflow_status(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(WorkflowStatusPayload, ctx.message_type, payload)
        record = self.runner.get_active(request.session_id)
        if record is not None:
            return record.status_view(active=True)
        record = await self.store.get_workflow(request.session_id)
        if record is None:
            raise WorkflowNotFound(f"workflow session {request.session_id} not found")
        return record.status_view(active=False)

    async def workflow_result(self, payload: Any, ctx: RequestContext) -> Dict[str, Any]:
        request = validate_payload(WorkflowResultPayload, ctx.message_type, payload)
        record = await self.runner.get(request.session_id)
        if record is None:
            raise WorkflowNotFound(f"workflow session {request.session_id} not found")
        if not record.terminal:
            raise WorkflowStillRunning(
                f"workflow session {request.session_id} is still running",
                details={"sessionId": request.session_id, "currentStep": record.current_step},
            )
        return record.result_view(include_steps=request.include_steps)
