import json

import pytest
import yaml

from sidecar.config.providers import (
    ClickStep,
    FillStep,
    ObserverHarvest,
    PollingConfig,
    ProviderRegistry,
    RaceHarvest,
    WaitStep,
)
from sidecar.errors import ConfigurationError
from sidecar.tests.helpers import make_provider, provider_data


def test_steps_and_harvest_methods_are_tagged_variants():
    provider = make_provider(
        broadcast=[
            {"action": "fill", "target": "prompt_input"},
            {"action": "wait", "ms": 100},
            {"action": "click", "target": "send_button", "timeout_ms": 2000},
        ],
        harvest={"method": "concurrent"},
    )

    fill, wait, click = provider.broadcast
    assert isinstance(fill, FillStep) and fill.value == "{{prompt}}"
    assert isinstance(wait, WaitStep) and wait.ms == 100
    assert isinstance(click, ClickStep) and click.timeout_ms == 2000
    assert isinstance(provider.harvest, RaceHarvest)
    assert provider.display_name == "Echo"


@pytest.mark.parametrize(
    "overrides, fragment",
    [
        ({"broadcast": [{"action": "hover", "target": "prompt_input"}]}, "hover"),
        ({"broadcast": [{"action": "click", "target": "missing_group"}]}, "missing_group"),
        ({"broadcast": []}, "broadcast"),
        ({"harvest": {"method": "telepathy"}}, "telepathy"),
        ({"selectors": {"prompt_input": ["#prompt"], "send_button": ["#send"]}}, "response_container"),
        ({"readiness": {"ready_targets": ["chat_box"]}}, "chat_box"),
        ({"unexpected": True}, "unexpected"),
    ],
)
def test_invalid_provider_definitions_fail_at_load_time(overrides, fragment):
    with pytest.raises(ConfigurationError) as excinfo:
        ProviderRegistry.parse(provider_data(**overrides))

    assert excinfo.value.code == "E.CONFIG.INVALID"
    assert fragment in json.dumps(excinfo.value.details, default=str)


def test_observer_harvest_requires_its_marker_group():
    selectors = dict(provider_data()["selectors"])
    del selectors["completion_marker"]

    with pytest.raises(ConfigurationError):
        ProviderRegistry.parse(provider_data(selectors=selectors, harvest={"method": "observer"}))

    provider = make_provider(harvest={"method": "observer"})
    assert isinstance(provider.harvest, ObserverHarvest)


def test_polling_defaults_follow_the_selectors():
    polling = PollingConfig(base_delay_ms=500, backoff_multiplier=2.0)

    assert polling.delay_for(0) == pytest.approx(0.5)
    assert polling.delay_for(2) == pytest.approx(2.0)
    checks = polling.effective_checks({"streaming_indicator": [".x"]})
    assert [(check.kind, check.target) for check in checks] == [("absence", "streaming_indicator")]
    assert polling.effective_checks({"response_container": [".r"]}) == []


def test_registry_lookup_and_duplicates():
    registry = ProviderRegistry([make_provider()])

    assert "echo" in registry
    assert len(registry) == 1
    assert registry.get("echo").base_url.startswith("https://")
    with pytest.raises(ConfigurationError):
        registry.get("nope")
    with pytest.raises(ConfigurationError):
        registry.register(make_provider())
    registry.register(make_provider(name="Echo v2"), replace=True)
    assert registry.get("echo").name == "Echo v2"


def test_registry_loads_a_providers_directory(tmp_path):
    data = provider_data()
    del data["provider_key"]
    (tmp_path / "echo.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")
    (tmp_path / "relay.json").write_text(
        json.dumps({**data, "provider_key": "relay", "base_url": "https://relay.test/"}),
        encoding="utf-8",
    )
    (tmp_path / "README.txt").write_text("ignored", encoding="utf-8")

    registry = ProviderRegistry()
    registry.load_directory(tmp_path)

    assert registry.keys() == ["echo", "relay"]

    with pytest.raises(ConfigurationError):
        registry.load_directory(tmp_path / "missing")


def test_location_matching():
    provider = make_provider(hostnames=["echo.example"])

    assert provider.matches_location("https://echo.test/c/1")
    assert provider.matches_location("https://echo.example/chat")
    assert not provider.matches_location("https://elsewhere.test/")
    assert not provider.matches_location(None)


def test_detection_patterns_are_normalised():
    provider = make_provider(detection={"network_content_types": [" Application/JSON "], "structural_hints": ["Reply"]})

    assert provider.detection.network_content_types == ["application/json"]
    assert provider.detection.structural_hints == ["reply"]
    with pytest.raises(ConfigurationError):
        ProviderRegistry.parse(provider_data(detection={"structural_hints": ["  "]}))


def test_hostnames_match_whole_host_labels():
    provider = make_provider(hostnames=["Echo.Example"])

    assert provider.hostnames == ["echo.example"]
    assert provider.matches_location("https://chat.echo.example/c/1")
    assert not provider.matches_location("https://notecho.example/")
    assert not provider.matches_location("https://elsewhere.test/?next=echo.example")
