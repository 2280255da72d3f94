from datetime import datetime, timezone

import pytest

from sidecar.flights.models import FlightSnapshot, FlightState
from sidecar.store.memory import InMemorySessionStore
from sidecar.workflows import WorkflowRecord, WorkflowState, WorkflowStep


def _snapshot(flight_id):
    return FlightSnapshot(
        flight_id=flight_id,
        provider_key="echo",
        prompt="hi",
        state=FlightState.COMPLETED,
        start_time=datetime.now(timezone.utc),
    )


def _workflow(session_id):
    return WorkflowRecord(
        session_id=session_id,
        workflow_id="wf",
        steps=[WorkflowStep(step_id="a", provider_key="echo", prompt="hi")],
    )


@pytest.mark.asyncio
async def test_oldest_records_are_evicted_past_the_cap():
    store = InMemorySessionStore(hot_size=1, max_records=2)

    for flight_id in ("f-1", "f-2", "f-3"):
        await store.save(_snapshot(flight_id))

    assert len(store) == 2
    assert await store.get("f-1") is None
    assert (await store.get("f-3")).flight_id == "f-3"
    assert [snapshot.flight_id for snapshot in await store.list_recent()] == ["f-3"]

    # Re-saving refreshes a record's position.
    await store.save(_snapshot("f-2"))
    await store.save(_snapshot("f-4"))
    assert await store.get("f-3") is None
    assert await store.get("f-2") is not None


@pytest.mark.asyncio
async def test_workflow_records_are_capped_and_copied():
    store = InMemorySessionStore(hot_size=1, max_records=2)
    record = _workflow("s-1")
    await store.save_workflow(record)

    record.state = WorkflowState.FAILED
    assert (await store.get_workflow("s-1")).state is WorkflowState.RUNNING

    await store.save_workflow(_workflow("s-2"))
    await store.save_workflow(_workflow("s-3"))
    assert await store.get_workflow("s-1") is None
    assert store.workflow_saves == 3


def test_cap_must_hold_the_recent_list():
    with pytest.raises(ValueError):
        InMemorySessionStore(hot_size=10, max_records=5)
