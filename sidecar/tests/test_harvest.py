import asyncio

import pytest

from sidecar.errors import DetectionTimeout, HarvestEmptyResult
from sidecar.race.harvest import Harvester
from sidecar.tests.helpers import BASE_URL, make_host, make_provider

FAST_POLLING = {"max_attempts": 20, "base_delay_ms": 10, "backoff_multiplier": 1.0, "stabilization_ms": 0}
FAST_OBSERVER = {"stabilization_ms": 0, "timeout_ms": 500}


def _setup(**provider_overrides):
    host = make_host()
    page = host.add_page(BASE_URL)
    return host, page, Harvester(host, make_provider(**provider_overrides))


def _finish_later(host, page, text, delay=0.02):
    def _finish():
        host.mutate(page.instance_id, ".streaming", None)
        host.mutate(page.instance_id, ".response", [text])
        host.mutate(page.instance_id, ".done", ["done"])

    asyncio.get_running_loop().call_later(delay, _finish)


@pytest.mark.asyncio
async def test_polling_extracts_trimmed_text():
    host, page, harvester = _setup()
    page.elements[".response"] = ["earlier answer", "  latest answer \n"]

    text, strategy = await harvester.run(page.instance_id)

    assert text == "latest answer"
    assert strategy == "polling"


@pytest.mark.asyncio
async def test_polling_waits_for_streaming_indicator_to_disappear():
    host, page, harvester = _setup(harvest={"method": "poll", "polling": FAST_POLLING})
    page.elements[".streaming"] = ["..."]
    page.elements[".response"] = ["partial"]
    _finish_later(host, page, "complete answer")

    text, _ = await harvester.run(page.instance_id)

    assert text == "complete answer"


@pytest.mark.asyncio
async def test_polling_exhaustion_is_a_detection_timeout():
    host, page, harvester = _setup(
        harvest={"method": "poll", "polling": {**FAST_POLLING, "max_attempts": 3}},
    )
    page.elements[".streaming"] = ["..."]

    with pytest.raises(DetectionTimeout) as excinfo:
        await harvester.run(page.instance_id)

    assert excinfo.value.strategy == "polling"


@pytest.mark.asyncio
async def test_presence_check_waits_for_the_marker():
    host, page, harvester = _setup(
        harvest={
            "method": "poll",
            "polling": {**FAST_POLLING, "completion_checks": [{"kind": "presence", "target": "completion_marker"}]},
        },
    )
    _finish_later(host, page, "marked answer")

    text, _ = await harvester.run(page.instance_id)

    assert text == "marked answer"


@pytest.mark.asyncio
async def test_empty_response_is_reported_distinctly():
    host, page, harvester = _setup()
    page.elements[".response"] = ["   "]

    with pytest.raises(HarvestEmptyResult) as excinfo:
        await harvester.run(page.instance_id)

    assert excinfo.value.strategy == "polling"


@pytest.mark.asyncio
async def test_observer_waits_for_completion_marker():
    host, page, harvester = _setup(harvest={"method": "observer", "observer": FAST_OBSERVER})
    _finish_later(host, page, "observed answer")

    text, strategy = await harvester.run(page.instance_id)

    assert (text, strategy) == ("observed answer", "observer")
    assert host.active_watches == []


@pytest.mark.asyncio
async def test_observer_failsafe_timeout():
    host, page, harvester = _setup(
        harvest={"method": "observer", "observer": {**FAST_OBSERVER, "timeout_ms": 30}},
    )

    with pytest.raises(DetectionTimeout) as excinfo:
        await harvester.run(page.instance_id)

    assert excinfo.value.strategy == "observer"
    assert host.active_watches == []


@pytest.mark.asyncio
async def test_race_harvest_prefers_whichever_strategy_sees_completion_first():
    host, page, harvester = _setup(
        harvest={"method": "race", "polling": {**FAST_POLLING, "max_attempts": 50}, "observer": FAST_OBSERVER},
    )
    # Polling stays blocked: the streaming indicator never goes away.
    page.elements[".streaming"] = ["..."]

    def _finish():
        host.mutate(page.instance_id, ".response", ["raced answer"])
        host.mutate(page.instance_id, ".done", ["done"])

    asyncio.get_running_loop().call_later(0.02, _finish)

    text, strategy = await harvester.run(page.instance_id)

    assert (text, strategy) == ("raced answer", "observer")
    assert host.active_watches == []


@pytest.mark.asyncio
async def test_race_harvest_polling_can_win():
    host, page, harvester = _setup(harvest={"method": "concurrent", "polling": FAST_POLLING, "observer": FAST_OBSERVER})
    page.elements[".response"] = ["already there"]

    text, strategy = await harvester.run(page.instance_id)

    assert (text, strategy) == ("already there", "polling")


@pytest.mark.asyncio
async def test_harvest_report_carries_failures_instead_of_raising():
    host, page, harvester = _setup()

    report = await harvester.harvest(page.instance_id)

    payload = report.to_dict()
    assert payload["success"] is False
    assert payload["error"]["code"] == "E.HARVEST.EMPTY"
    assert payload["meta"]["strategy"] == "polling"
    assert payload["meta"]["method"] == "poll"
