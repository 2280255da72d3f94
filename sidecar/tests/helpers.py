"""Builders shared by the sidecar test modules."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sidecar.config.providers import ProviderConfig, ProviderRegistry
from sidecar.flights.coordinator import FlightCoordinator
from sidecar.hosts.dummy import DummyHost, DummyPage
from sidecar.pool.pool import WorkerContextPool
from sidecar.race.engine import CompletionRaceEngine
from sidecar.store.memory import InMemorySessionStore

BASE_URL = "https://echo.test/"


def provider_data(**overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "provider_key": "echo",
        "name": "Echo",
        "base_url": BASE_URL,
        "selectors": {
            "prompt_input": ["#prompt"],
            "send_button": ["#send"],
            "response_container": [".response"],
            "streaming_indicator": [".streaming"],
            "completion_marker": [".done"],
            "login_button": [".login"],
        },
        "broadcast": [
            {"action": "fill", "target": "prompt_input"},
            {"action": "click", "target": "send_button"},
        ],
        "harvest": {
            "method": "poll",
            "polling": {"max_attempts": 5, "base_delay_ms": 10, "backoff_multiplier": 1.0, "stabilization_ms": 0},
        },
        "detection": {"network_settle_ms": 0, "structural_settle_ms": 0},
        "readiness": {"ready_targets": ["prompt_input"], "login_targets": ["login_button"]},
        "timeout_ms": 1000,
        "retry_delay_ms": 10,
    }
    data.update(overrides)
    return data


def make_provider(**overrides: Any) -> ProviderConfig:
    return ProviderConfig.model_validate(provider_data(**overrides))


def ready_page(page: DummyPage) -> None:
    page.elements.setdefault("#prompt", [""])
    page.elements.setdefault("#send", ["Send"])


def make_host(**options: Any) -> DummyHost:
    host = DummyHost(**options)
    host.on_open = ready_page
    return host


def answer_with(
    host: DummyHost,
    text: str,
    *,
    signal: Optional[str] = "explicit",
    data: Optional[Dict[str, Any]] = None,
    delay: float = 0.0,
) -> None:
    """Make every broadcast produce ``text`` and raise a completion signal."""

    def _finish(page: DummyPage) -> None:
        page.elements[".response"] = [text]
        if signal is not None:
            host.emit(page.instance_id, signal, data or {})

    def _hook(page: DummyPage, steps, variables) -> None:
        if delay:
            asyncio.get_running_loop().call_later(delay, _finish, page)
        else:
            _finish(page)

    host.on_perform = _hook


@dataclass
class Stack:
    host: DummyHost
    providers: ProviderRegistry
    pool: WorkerContextPool
    races: CompletionRaceEngine
    store: InMemorySessionStore
    coordinator: FlightCoordinator


def make_pool(host: DummyHost, providers: ProviderRegistry, **options: Any) -> WorkerContextPool:
    settings: Dict[str, Any] = {
        "creation_timeout_ms": 200,
        "creation_poll_interval_ms": 10,
        "probe_timeout_ms": 50,
        "health_check_interval_seconds": 60.0,
        "error_grace_ms": 0,
    }
    settings.update(options)
    return WorkerContextPool(host, providers, **settings)


def make_stack(
    host: Optional[DummyHost] = None,
    provider: Optional[ProviderConfig] = None,
    *,
    pool_options: Optional[Dict[str, Any]] = None,
    **coordinator_options: Any,
) -> Stack:
    host = host or make_host()
    providers = ProviderRegistry([provider or make_provider()])
    pool = make_pool(host, providers, **(pool_options or {}))
    races = CompletionRaceEngine(host, providers, default_timeout_ms=500)
    store = InMemorySessionStore()
    options: Dict[str, Any] = {"default_timeout_ms": 500, "retry_delay_ms": 10}
    options.update(coordinator_options)
    coordinator = FlightCoordinator(pool, races, store, providers, **options)
    return Stack(host=host, providers=providers, pool=pool, races=races, store=store, coordinator=coordinator)
