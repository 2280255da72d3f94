import asyncio

import pytest

from sidecar.bootstrap import build_engine
from sidecar.config.providers import ProviderRegistry
from sidecar.config.settings import SidecarSettings
from sidecar.dispatch.context import RequestContext
from sidecar.handlers.readiness import ReadinessHandlers
from sidecar.pool import ContextState
from sidecar.tests.helpers import BASE_URL, answer_with, make_host, make_pool, make_provider, ready_page

FAST_SETTINGS = {
    "context_host": "dummy",
    "creation_timeout_ms": 200,
    "creation_poll_interval_ms": 10,
    "probe_timeout_ms": 50,
    "error_grace_ms": 0,
    "default_timeout_ms": 500,
    "retry_delay_ms": 10,
}


def _engine(provider=None, **overrides):
    settings = SidecarSettings(**{**FAST_SETTINGS, **overrides})
    return build_engine(settings, host=make_host(), providers=ProviderRegistry([provider or make_provider()]))


async def _send(engine, message_type, payload=None):
    response = await engine.dispatcher.dispatch({"type": message_type, "payload": payload})
    return response.to_wire()


@pytest.mark.asyncio
async def test_ping_and_stats():
    engine = _engine()

    assert (await _send(engine, "PING"))["data"] == "pong"
    stats = (await _send(engine, "GET_STATS"))["data"]

    assert stats["providers"] == ["echo"]
    assert stats["pool"]["total"] == 0
    assert stats["flights"]["tracked"] == 0
    assert stats["dispatch"]["PING"]["count"] == 1


@pytest.mark.asyncio
async def test_execute_prompt_returns_completed_snapshot():
    engine = _engine()
    answer_with(engine.host, "bonjour")

    reply = await _send(
        engine,
        "EXECUTE_PROMPT",
        {"providerKey": "echo", "prompt": "hello", "options": {"timeoutMs": 400, "metadata": {"user": "u-1"}}},
    )

    assert reply["success"] is True
    flight = reply["data"]
    assert flight["state"] == "COMPLETED"
    assert flight["result"] == "bonjour"
    assert flight["winner"] == "explicit"
    assert flight["metadata"]["timeoutMs"] == 400
    assert flight["metadata"]["extra"]["user"] == "u-1"
    assert flight["metadata"]["extra"]["requestId"]
    await engine.stop()


@pytest.mark.asyncio
async def test_execute_prompt_failure_surfaces_flight_error():
    engine = _engine()
    engine.host.perform_error = "send button disabled"

    reply = await _send(
        engine,
        "EXECUTE_PROMPT",
        {"providerKey": "echo", "prompt": "hello", "options": {"maxRetries": 1}},
    )

    assert reply["success"] is False
    error = reply["error"]
    assert error["code"] == "E.BROADCAST.FAILED"
    assert error["strategy"] == "broadcast"
    assert error["details"]["attempts"] == 2
    assert error["details"]["flightId"]
    await engine.stop()


@pytest.mark.asyncio
async def test_execute_prompt_without_waiting_then_status_and_cancel():
    engine = _engine()

    launched = await _send(
        engine,
        "EXECUTE_PROMPT",
        {"providerKey": "echo", "prompt": "hello", "options": {"wait": False, "timeoutMs": 5000}},
    )
    flight_id = launched["data"]["flightId"]
    assert launched["data"]["state"] == "LAUNCHING"

    await asyncio.sleep(0.05)
    status = await _send(engine, "FLIGHT_STATUS", {"flightId": flight_id})
    assert status["data"]["state"] == "IN_FLIGHT"

    cancelled = await _send(engine, "CANCEL_FLIGHT", {"flightId": flight_id, "reason": "changed my mind"})
    assert cancelled["data"] == {"flightId": flight_id, "cancelled": True, "state": "CANCELLED"}

    recent = await _send(engine, "GET_RECENT_FLIGHTS", {"limit": 5})
    assert [item["flightId"] for item in recent["data"]] == [flight_id]
    assert recent["data"][0]["state"] == "CANCELLED"
    await engine.stop()


@pytest.mark.asyncio
async def test_flight_status_falls_back_to_the_store():
    engine = _engine(completed_retention_seconds=0)
    answer_with(engine.host, "stored")

    reply = await _send(engine, "EXECUTE_PROMPT", {"providerKey": "echo", "prompt": "hello"})
    flight_id = reply["data"]["flightId"]
    await asyncio.sleep(0.01)

    assert engine.coordinator.get(flight_id) is None
    status = await _send(engine, "FLIGHT_STATUS", {"flightId": flight_id})
    assert status["data"]["result"] == "stored"

    missing = await _send(engine, "FLIGHT_STATUS", {"flightId": "nope"})
    assert missing["error"]["code"] == "E.FLIGHT.NOT_FOUND"
    unknown_cancel = await _send(engine, "CANCEL_FLIGHT", {"flightId": "nope"})
    assert unknown_cancel["error"]["code"] == "E.FLIGHT.NOT_FOUND"


@pytest.mark.asyncio
async def test_execute_prompt_rejects_bad_requests():
    engine = _engine()

    unknown = await _send(engine, "EXECUTE_PROMPT", {"providerKey": "nope", "prompt": "hello"})
    assert unknown["error"]["code"] == "E.CONFIG.INVALID"

    invalid = await _send(engine, "EXECUTE_PROMPT", {"providerKey": "echo", "prompt": ""})
    assert invalid["error"]["code"] == "E.MESSAGE.INVALID_PAYLOAD"
    assert engine.coordinator.stats()["totals"]["launched"] == 0


@pytest.mark.asyncio
async def test_broadcast_then_harvest():
    engine = _engine()

    missing = await _send(engine, "HARVEST_RESPONSE", {"providerKey": "echo"})
    assert missing["error"]["code"] == "E.CONTEXT.ACQUISITION"

    broadcast = await _send(engine, "BROADCAST_PROMPT", {"providerKey": "echo", "prompt": "manual"})
    context_id = broadcast["data"]["contextId"]
    page = engine.host.pages[context_id]
    assert page.inputs["prompt_input"] == "manual"
    assert engine.pool.get(context_id).state is ContextState.IDLE

    page.elements[".response"] = ["manual answer"]
    harvest = await _send(engine, "HARVEST_RESPONSE", {"providerKey": "echo"})
    assert harvest["data"]["success"] is True
    assert harvest["data"]["data"] == "manual answer"
    assert harvest["data"]["meta"]["strategy"] == "polling"
    assert harvest["data"]["contextId"] == context_id


@pytest.mark.asyncio
async def test_failed_broadcast_marks_context_errored():
    engine = _engine(error_grace_ms=1000)
    engine.host.perform_error = "input missing"

    reply = await _send(engine, "BROADCAST_PROMPT", {"providerKey": "echo", "prompt": "manual"})

    assert reply["error"]["code"] == "E.BROADCAST.FAILED"
    context_id = engine.host.opened[0]
    assert engine.pool.get(context_id).state is ContextState.ERROR
    await engine.pool.stop()


@pytest.mark.asyncio
async def test_check_readiness_statuses():
    engine = _engine()
    host = engine.host

    status = await _send(engine, "CHECK_READINESS", {"providerKey": "echo"})
    assert status["data"]["status"] == "TAB_NOT_OPEN"

    page = host.add_page(BASE_URL)
    status = await _send(engine, "CHECK_READINESS", {"providerKey": "echo"})
    assert status["data"]["status"] == "NOT_READY"
    assert status["data"]["data"]["missing"] == ["prompt_input"]

    ready_page(page)
    status = await _send(engine, "CHECK_READINESS", {"providerKey": "echo"})
    assert status["data"]["status"] == "READY"
    assert status["data"]["data"]["instanceId"] == page.instance_id

    page.elements[".login"] = ["Log in"]
    status = await _send(engine, "CHECK_READINESS", {"providerKey": "echo"})
    assert status["data"]["status"] == "LOGIN_REQUIRED"

    page.responsive = False
    status = await _send(engine, "CHECK_READINESS", {"providerKey": "echo"})
    assert status["data"]["status"] == "NOT_READY"


@pytest.mark.asyncio
async def test_attempt_recovery_opens_missing_tab():
    engine = _engine()

    reply = await _send(engine, "ATTEMPT_RECOVERY", {"providerKey": "echo"})

    assert reply["data"]["status"] == "RECOVERED"
    assert len(engine.host.opened) == 1
    again = await _send(engine, "ATTEMPT_RECOVERY", {"providerKey": "echo"})
    assert again["data"]["status"] == "ALREADY_READY"


@pytest.mark.asyncio
async def test_attempt_recovery_reloads_a_broken_tab():
    host = make_host()
    providers = ProviderRegistry([make_provider()])
    handlers = ReadinessHandlers(host=host, pool=make_pool(host, providers), providers=providers, recovery_settle_ms=0)
    page = host.add_page(BASE_URL)
    ctx = RequestContext(request_id="r-1", message_type="ATTEMPT_RECOVERY")

    failed = await handlers.attempt_recovery({"providerKey": "echo"}, ctx)
    assert failed["status"] == "FAILED"
    assert page.reloads == 1

    reload = host.reload

    async def _reload_and_render(instance_id):
        await reload(instance_id)
        ready_page(host.page(instance_id))

    host.reload = _reload_and_render
    recovered = await handlers.attempt_recovery({"providerKey": "echo"}, ctx)
    assert recovered["status"] == "RECOVERED"
    assert page.reloads == 2


@pytest.mark.asyncio
async def test_reset_session_by_reload_and_by_steps():
    engine = _engine()

    reply = await _send(engine, "RESET_SESSION", {"providerKey": "echo"})
    assert reply["data"]["method"] == "reload"
    context_id = reply["data"]["contextId"]
    assert engine.host.pages[context_id].reloads == 1
    assert reply["data"]["newSessionId"]

    stepped = _engine(
        provider=make_provider(session_reset=[{"action": "click", "target": "send_button"}, {"action": "wait", "ms": 0}]),
    )
    reply = await _send(stepped, "RESET_SESSION", {"providerKey": "echo"})
    assert reply["data"]["method"] == "steps"
    assert stepped.host.performed[0][2] == {}
    assert stepped.pool.get(reply["data"]["contextId"]).state is ContextState.IDLE


@pytest.mark.asyncio
async def test_available_tabs_lists_pooled_contexts():
    engine = _engine()
    await _send(engine, "BROADCAST_PROMPT", {"providerKey": "echo", "prompt": "hi"})

    tabs = (await _send(engine, "GET_AVAILABLE_TABS"))["data"]
    assert [tab["state"] for tab in tabs] == ["IDLE"]
    assert tabs[0]["providerKey"] == "echo"

    filtered = (await _send(engine, "GET_AVAILABLE_TABS", {"providerKey": "other"}))["data"]
    assert filtered == []
