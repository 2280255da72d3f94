"""Workflow runner: executes a session's steps as consecutive flights."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from typing import Any, Dict, Optional, Sequence

from shared.models.messages import ErrorInfo
from sidecar.config.providers import ProviderRegistry
from sidecar.errors import (
    ConfigurationError,
    FlightCancelled,
    SidecarError,
    WorkflowNotFound,
    WorkflowStepFailed,
    describe_error,
)
from sidecar.flights.coordinator import FlightCoordinator
from sidecar.flights.models import FlightState, _utcnow
from sidecar.store.base import SessionStore
from sidecar.workflows.models import StepOutcome, WorkflowRecord, WorkflowState, WorkflowStep

LOGGER = logging.getLogger(__name__)


class WorkflowRunner:
    """Runs each workflow step as a coordinator flight, in order.

    A step starts only after the previous step's flight completed, and the
    first step that does not complete ends the session. Records are saved to
    the session store when a session starts, after each step and at the end.
    """

    def __init__(self, coordinator: FlightCoordinator, store: SessionStore, providers: ProviderRegistry) -> None:
        self._coordinator = coordinator
        self._store = store
        self._providers = providers
        self._active: Dict[str, WorkflowRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._counters: Counter = Counter()

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def start(
        self,
        workflow_id: str,
        steps: Sequence[WorkflowStep],
        *,
        input: Optional[str] = None,
    ) -> WorkflowRecord:
        if not steps:
            raise ConfigurationError(f"workflow {workflow_id} has no steps")
        for step in steps:
            self._providers.get(step.provider_key)

        record = WorkflowRecord(
            session_id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            steps=list(steps),
            input=input,
        )
        self._active[record.session_id] = record
        self._counters["started"] += 1
        LOGGER.info("Workflow %s started as session %s (%s steps)", workflow_id, record.session_id, len(steps))
        await self._store.save_workflow(record)

        task = asyncio.create_task(self._drive(record), name=f"workflow:{record.session_id}")
        self._tasks[record.session_id] = task

        def _finalise(done: asyncio.Task, session_id: str = record.session_id) -> None:
            if self._tasks.get(session_id) is done:
                self._tasks.pop(session_id, None)
                self._active.pop(session_id, None)

        task.add_done_callback(_finalise)
        return record

    async def run(
        self,
        workflow_id: str,
        steps: Sequence[WorkflowStep],
        *,
        input: Optional[str] = None,
    ) -> WorkflowRecord:
        record = await self.start(workflow_id, steps, input=input)
        return await self.wait(record.session_id)

    async def wait(self, session_id: str) -> WorkflowRecord:
        """Wait for the session to end; the caller being cancelled leaves it running."""

        task = self._tasks.get(session_id)
        if task is not None:
            return await asyncio.shield(task)
        record = await self._store.get_workflow(session_id)
        if record is None:
            raise WorkflowNotFound(f"workflow session {session_id} not found")
        return record

    def get_active(self, session_id: str) -> Optional[WorkflowRecord]:
        return self._active.get(session_id)

    async def get(self, session_id: str) -> Optional[WorkflowRecord]:
        record = self._active.get(session_id)
        if record is not None:
            return record
        return await self._store.get_workflow(session_id)

    def stats(self) -> Dict[str, Any]:
        return {
            "active": len(self._active),
            "totals": {key: self._counters.get(key, 0) for key in ("started", "completed", "failed", "cancelled")},
        }

    async def _drive(self, record: WorkflowRecord) -> WorkflowRecord:
        step: Optional[WorkflowStep] = None
        try:
            for index, step in enumerate(record.steps):
                record.current_step = index
                outcome = await self._run_step(record, step, index)
                record.outcomes.append(outcome)
                if outcome.state is not FlightState.COMPLETED:
                    state = WorkflowState.CANCELLED if outcome.state is FlightState.CANCELLED else WorkflowState.FAILED
                    self._finish(record, state, self._step_error(step, outcome.flight_id, outcome.error, outcome.state))
                    break
                await self._store.save_workflow(record)
            else:
                record.current_step = len(record.steps)
                self._finish(record, WorkflowState.COMPLETED)
        except asyncio.CancelledError:
            self._finish(
                record,
                WorkflowState.CANCELLED,
                FlightCancelled("workflow session cancelled", details={"stepId": step.step_id if step else None}),
            )
            await self._store.save_workflow(record)
            raise
        except SidecarError as exc:
            self._finish(record, WorkflowState.FAILED, self._step_error(step, None, describe_error(exc), None))
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Unexpected failure in workflow session %s", record.session_id)
            self._finish(record, WorkflowState.FAILED, self._step_error(step, None, describe_error(exc), None))
        await self._store.save_workflow(record)
        return record

    async def _run_step(self, record: WorkflowRecord, step: WorkflowStep, index: int) -> StepOutcome:
        prompt = record.render_prompt(step)
        LOGGER.info(
            "Workflow session %s step %s (%s/%s) on %s",
            record.session_id,
            step.step_id,
            index + 1,
            len(record.steps),
            step.provider_key,
        )
        flight = await self._coordinator.launch(
            step.provider_key,
            prompt,
            timeout_ms=step.timeout_ms,
            max_retries=step.max_retries,
            metadata={"workflowSessionId": record.session_id, "stepId": step.step_id},
        )
        try:
            flight = await self._coordinator.wait(flight.flight_id)
        except asyncio.CancelledError:
            await self._coordinator.cancel(flight.flight_id, "workflow session cancelled")
            raise
        return StepOutcome(
            step_id=step.step_id,
            provider_key=step.provider_key,
            prompt=prompt,
            flight_id=flight.flight_id,
            state=flight.state,
            result=flight.result,
            winner=flight.winner,
            elapsed_ms=flight.elapsed_ms,
            attempts=flight.attempts,
            error=flight.error,
        )

    @staticmethod
    def _step_error(
        step: Optional[WorkflowStep],
        flight_id: Optional[str],
        cause: Optional[ErrorInfo],
        state: Optional[FlightState],
    ) -> WorkflowStepFailed:
        step_id = step.step_id if step is not None else None
        reason = cause.message if cause is not None else f"flight ended {state.value if state else 'early'}"
        return WorkflowStepFailed(
            f"step {step_id} failed: {reason}",
            strategy=step_id,
            details={"stepId": step_id, "flightId": flight_id, "cause": cause.code if cause is not None else None},
        )

    def _finish(self, record: WorkflowRecord, state: WorkflowState, error: Optional[SidecarError] = None) -> None:
        if record.terminal:
            return
        record.state = state
        record.end_time = _utcnow()
        record.error = describe_error(error) if error is not None else None
        self._counters[state.value.lower()] += 1
        if error is None:
            LOGGER.info("Workflow session %s completed", record.session_id)
        else:
            LOGGER.warning("Workflow session %s ended %s: %s", record.session_id, state.value, error.message)
