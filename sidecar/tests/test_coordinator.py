import asyncio
from datetime import timedelta

import pytest

from sidecar.errors import BroadcastError, ConfigurationError, FlightNotFound, PayloadValidationError
from sidecar.flights.models import ALLOWED_TRANSITIONS, Flight, FlightMetadata, FlightState, InvalidTransition
from sidecar.pool import ContextState
from sidecar.tests.helpers import answer_with, make_provider, make_stack


async def _until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def test_transition_table_is_closed():
    flight = Flight(
        flight_id="f-1",
        provider_key="echo",
        prompt="hi",
        metadata=FlightMetadata(timeout_ms=100, max_retries=1),
    )
    for target in FlightState:
        assert flight.can_transition(target) == (target in ALLOWED_TRANSITIONS[FlightState.LAUNCHING])

    flight.transition(FlightState.IN_FLIGHT)
    flight.context_id = "tab-1"
    flight.transition(FlightState.FAILED, reason="E.DETECTION.TIMEOUT")
    assert flight.context_id is None
    assert flight.end_time is not None
    assert flight.can_transition(FlightState.LAUNCHING)

    flight.transition(FlightState.LAUNCHING, reason="retry")
    assert flight.end_time is None
    flight.metadata.retry_count = 1
    flight.transition(FlightState.FAILED)
    # Retry budget spent: FAILED is now final.
    assert not flight.can_transition(FlightState.LAUNCHING)

    done = Flight(flight_id="f-2", provider_key="echo", prompt="hi", metadata=FlightMetadata(timeout_ms=100))
    done.transition(FlightState.CANCELLED)
    for target in FlightState:
        with pytest.raises(InvalidTransition):
            done.transition(target)
    assert [step.target for step in done.transitions] == [FlightState.LAUNCHING, FlightState.CANCELLED]


@pytest.mark.asyncio
async def test_flight_completes_and_releases_its_context():
    stack = make_stack()
    answer_with(stack.host, "  pong  ")

    flight = await stack.coordinator.run("echo", "ping")

    assert flight.state is FlightState.COMPLETED
    assert flight.result == "pong"
    assert flight.winner == "explicit"
    assert flight.harvest_strategy == "polling"
    assert flight.context_id is None
    assert flight.attempts == 1
    context_id = stack.host.opened[0]
    assert stack.pool.get(context_id).state is ContextState.IDLE
    assert stack.host.pages[context_id].inputs["prompt_input"] == "ping"
    assert stack.host.performed[0][2] == {"prompt": "ping"}
    # Launch and completion are the only two snapshots written.
    assert stack.store.saves == 2
    assert (await stack.store.get(flight.flight_id)).state is FlightState.COMPLETED
    await stack.coordinator.stop()


@pytest.mark.asyncio
async def test_second_flight_reuses_the_idle_context():
    stack = make_stack()
    answer_with(stack.host, "pong")

    first = await stack.coordinator.run("echo", "one")
    second = await stack.coordinator.run("echo", "two")

    assert first.state is second.state is FlightState.COMPLETED
    assert len(stack.host.opened) == 1
    await stack.coordinator.stop()


@pytest.mark.asyncio
async def test_retry_bound_is_max_retries_plus_one_attempts():
    stack = make_stack()
    stack.host.perform_error = "send button missing"

    flight = await stack.coordinator.run("echo", "hi", max_retries=2)

    assert flight.state is FlightState.FAILED
    assert flight.attempts == 3
    assert flight.metadata.retry_count == 2
    assert flight.error.code == "E.BROADCAST.FAILED"
    assert flight.error.strategy == "broadcast"
    # Every failed attempt poisoned its context, so each retry opened a new one.
    assert len(stack.host.opened) == 3
    assert stack.coordinator.stats()["totals"]["retries"] == 2
    assert stack.store.saves == 2
    await stack.coordinator.stop()


@pytest.mark.asyncio
async def test_retry_recovers_after_a_transient_failure():
    stack = make_stack()
    calls = []

    def _flaky(page, steps, variables):
        calls.append(page.instance_id)
        if len(calls) == 1:
            raise BroadcastError("input not interactable yet")
        page.elements[".response"] = ["second time lucky"]
        stack.host.emit(page.instance_id, "explicit", {})

    stack.host.on_perform = _flaky

    flight = await stack.coordinator.run("echo", "hi")

    assert flight.state is FlightState.COMPLETED
    assert flight.result == "second time lucky"
    assert flight.attempts == 2
    assert flight.metadata.retry_count == 1
    assert calls[0] != calls[1]
    states = [step.target for step in flight.transitions]
    assert states == [
        FlightState.LAUNCHING,
        FlightState.IN_FLIGHT,
        FlightState.FAILED,
        FlightState.LAUNCHING,
        FlightState.IN_FLIGHT,
        FlightState.COMPLETED,
    ]
    await stack.coordinator.stop()


@pytest.mark.asyncio
async def test_provider_retry_budget_applies_when_request_omits_one():
    stack = make_stack(provider=make_provider(max_retries=0))
    stack.host.perform_error = "boom"

    flight = await stack.coordinator.run("echo", "hi")

    assert flight.state is FlightState.FAILED
    assert flight.attempts == 1
    await stack.coordinator.stop()


@pytest.mark.asyncio
async def test_non_retryable_failure_is_terminal(monkeypatch):
    stack = make_stack()

    async def _reject(*args, **kwargs):
        raise PayloadValidationError("prompt rejected by provider")

    monkeypatch.setattr(stack.races, "execute", _reject)

    flight = await stack.coordinator.run("echo", "hi", max_retries=5)

    assert flight.state is FlightState.FAILED
    assert flight.attempts == 1
    assert flight.error.code == "E.MESSAGE.INVALID_PAYLOAD"
    await stack.coordinator.stop()


@pytest.mark.asyncio
async def test_unexpected_exception_is_wrapped_and_not_retried(monkeypatch, caplog):
    stack = make_stack()

    async def _explode(*args, **kwargs):
        raise KeyError("selector")

    monkeypatch.setattr(stack.races, "execute", _explode)

    flight = await stack.coordinator.run("echo", "hi", max_retries=2)

    assert flight.state is FlightState.FAILED
    assert flight.attempts == 1
    assert flight.error.code == "E.FLIGHT.UNEXPECTED"
    assert isinstance(flight.exception.__cause__, KeyError)
    assert "Unexpected failure while driving flight" in caplog.text
    await stack.coordinator.stop()


@pytest.mark.asyncio
async def test_cancel_in_flight_cleans_up():
    stack = make_stack()

    flight = await stack.coordinator.launch("echo", "hi", timeout_ms=5000)
    await _until(lambda: flight.state is FlightState.IN_FLIGHT and stack.host.active_watches)
    context_id = flight.context_id

    assert await stack.coordinator.cancel(flight.flight_id, "user aborted") is True
    assert await stack.coordinator.cancel(flight.flight_id) is False

    assert flight.state is FlightState.CANCELLED
    assert flight.error.code == "E.FLIGHT.CANCELLED"
    assert stack.pool.get(context_id).state is ContextState.IDLE
    assert stack.host.active_watches == []
    assert (await stack.coordinator.wait(flight.flight_id, timeout=0.1)) is flight
    # A completion arriving after the cancel changes nothing.
    assert await stack.coordinator.complete(flight.flight_id, "late") is False
    assert flight.result is None
    assert stack.store.saves == 2
    await stack.coordinator.stop()


@pytest.mark.asyncio
async def test_cancel_during_retry_backoff_stops_the_retry():
    stack = make_stack(provider=make_provider(retry_delay_ms=10_000))
    stack.host.perform_error = "boom"

    flight = await stack.coordinator.launch("echo", "hi", max_retries=3)
    await _until(lambda: flight.metadata.retry_count == 1)

    assert await stack.coordinator.cancel(flight.flight_id)
    assert flight.state is FlightState.CANCELLED
    assert stack.coordinator.stats()["pendingRetries"] == 0
    await stack.coordinator.stop()


@pytest.mark.asyncio
async def test_unknown_flight_and_provider_are_rejected():
    stack = make_stack()

    with pytest.raises(FlightNotFound):
        await stack.coordinator.cancel("missing")
    with pytest.raises(FlightNotFound):
        await stack.coordinator.wait("missing")
    with pytest.raises(ConfigurationError):
        await stack.coordinator.launch("nope", "hi")


@pytest.mark.asyncio
async def test_finished_flights_leave_the_table_after_retention():
    stack = make_stack(completed_retention_seconds=0.01)
    answer_with(stack.host, "pong")

    flight = await stack.coordinator.run("echo", "hi")
    await asyncio.sleep(0.05)

    assert stack.coordinator.get(flight.flight_id) is None
    assert (await stack.store.get(flight.flight_id)).result == "pong"


@pytest.mark.asyncio
async def test_sweep_removes_old_terminal_flights():
    stack = make_stack()
    answer_with(stack.host, "pong")
    flight = await stack.coordinator.run("echo", "hi")
    flight.end_time -= timedelta(hours=1)

    removed = await stack.coordinator.sweep()

    assert removed == [flight.flight_id]
    assert stack.coordinator.get(flight.flight_id) is None


@pytest.mark.asyncio
async def test_sweep_fails_flights_stuck_past_max_age():
    stack = make_stack(pool_options={"error_grace_ms": 1000})

    flight = await stack.coordinator.launch("echo", "hi", timeout_ms=5000)
    await _until(lambda: flight.state is FlightState.IN_FLIGHT)
    context_id = flight.context_id
    flight.start_time -= timedelta(hours=1)

    removed = await stack.coordinator.sweep()

    assert removed == [flight.flight_id]
    assert stack.coordinator.get(flight.flight_id) is None
    snapshot = await stack.store.get(flight.flight_id)
    assert snapshot.state is FlightState.FAILED
    assert snapshot.error.code == "E.FLIGHT.UNEXPECTED"
    assert stack.pool.get(context_id).state is ContextState.ERROR
    assert stack.host.active_watches == []
    await stack.pool.stop()


@pytest.mark.asyncio
async def test_stop_cancels_unfinished_flights():
    stack = make_stack()
    await stack.coordinator.start()

    flight = await stack.coordinator.launch("echo", "hi", timeout_ms=5000)
    await _until(lambda: flight.state is FlightState.IN_FLIGHT)
    await stack.coordinator.stop()

    assert flight.state is FlightState.CANCELLED
    assert stack.coordinator.stats()["activeDrivers"] == 0
