"""Per-provider interaction, detection and harvest configuration."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from urllib.parse import urlsplit
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
    model_validator,
)

from sidecar.errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "{{prompt}}"


class _Config(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class FillStep(_Config):
    action: Literal["fill"] = "fill"
    target: str
    value: str = PROMPT_PLACEHOLDER
    timeout_ms: PositiveInt = 7000


class ClickStep(_Config):
    action: Literal["click"] = "click"
    target: str
    timeout_ms: PositiveInt = 5000


class WaitStep(_Config):
    action: Literal["wait"] = "wait"
    ms: NonNegativeInt


BroadcastStep = Annotated[Union[FillStep, ClickStep, WaitStep], Field(discriminator="action")]


class CompletionCheck(_Config):
    """Selector-group predicate evaluated on each polling attempt."""

    kind: Literal["absence", "presence"]
    target: str


class PollingConfig(_Config):
    max_attempts: PositiveInt = 10
    base_delay_ms: PositiveInt = 500
    backoff_multiplier: PositiveFloat = 1.2
    stabilization_ms: NonNegativeInt = 500
    completion_checks: Optional[List[CompletionCheck]] = None

    def delay_for(self, attempt: int) -> float:
        """Seconds to sleep after the zero-based ``attempt`` failed its checks."""

        return self.base_delay_ms * (self.backoff_multiplier ** attempt) / 1000.0

    def effective_checks(self, selectors: Dict[str, List[str]]) -> List[CompletionCheck]:
        if self.completion_checks is not None:
            return list(self.completion_checks)
        if "streaming_indicator" in selectors:
            return [CompletionCheck(kind="absence", target="streaming_indicator")]
        return []


class ObserverConfig(_Config):
    observe_target: str = "response_container"
    marker_target: str = "completion_marker"
    stabilization_ms: NonNegativeInt = 200
    timeout_ms: PositiveInt = 45000


class PollHarvest(_Config):
    method: Literal["poll"] = "poll"
    polling: PollingConfig = Field(default_factory=PollingConfig)


class ObserverHarvest(_Config):
    method: Literal["observer"] = "observer"
    observer: ObserverConfig = Field(default_factory=ObserverConfig)


class RaceHarvest(_Config):
    method: Literal["race", "concurrent"] = "race"
    polling: PollingConfig = Field(default_factory=PollingConfig)
    observer: ObserverConfig = Field(default_factory=ObserverConfig)


HarvestMethod = Annotated[Union[PollHarvest, ObserverHarvest, RaceHarvest], Field(discriminator="method")]


class DetectionTiming(_Config):
    network_settle_ms: NonNegativeInt = 1000
    structural_settle_ms: NonNegativeInt = 2000
    structural_min_text: PositiveInt = 50
    network_content_types: List[str] = Field(
        default_factory=lambda: ["text/event-stream", "application/json"]
    )
    network_url_patterns: List[str] = Field(default_factory=list)
    structural_hints: List[str] = Field(
        default_factory=lambda: ["message", "response", "content", "text", "output"]
    )
    completion_attributes: List[str] = Field(
        default_factory=lambda: ["data-complete", "data-done", "aria-busy"]
    )

    @field_validator("network_content_types", "structural_hints")
    @classmethod
    def _normalise_patterns(cls, values: List[str]) -> List[str]:
        """Matched against lowercased header values and class names."""

        normalised = [value.strip().lower() for value in values]
        if not all(normalised):
            raise ValueError("patterns must not be blank")
        return normalised


class ReadinessSpec(_Config):
    """Selector groups that tell whether the provider page can take a prompt."""

    ready_targets: List[str] = Field(default_factory=list)
    login_targets: List[str] = Field(default_factory=list)


class ProviderConfig(_Config):
    provider_key: str = Field(..., min_length=1)
    name: str = ""
    base_url: str = Field(..., min_length=1)
    hostnames: List[str] = Field(default_factory=list)
    selectors: Dict[str, List[str]]
    broadcast: List[BroadcastStep] = Field(..., min_length=1)
    harvest: HarvestMethod = Field(default_factory=PollHarvest)
    detection: DetectionTiming = Field(default_factory=DetectionTiming)
    readiness: ReadinessSpec = Field(default_factory=ReadinessSpec)
    session_reset: List[BroadcastStep] = Field(default_factory=list)
    timeout_ms: Optional[PositiveInt] = None
    max_retries: Optional[NonNegativeInt] = None
    retry_delay_ms: Optional[PositiveInt] = None

    @model_validator(mode="after")
    def _check_references(self) -> "ProviderConfig":
        for group, selectors in self.selectors.items():
            if not selectors:
                raise ValueError(f"selector group '{group}' is empty")
        if "response_container" not in self.selectors:
            raise ValueError("selectors.response_container is required")

        referenced: list[tuple[str, str]] = []
        for index, step in enumerate(self.broadcast):
            if not isinstance(step, WaitStep):
                referenced.append((f"broadcast[{index}]", step.target))
        for index, step in enumerate(self.session_reset):
            if not isinstance(step, WaitStep):
                referenced.append((f"session_reset[{index}]", step.target))
        for target in self.readiness.ready_targets:
            referenced.append(("readiness.ready_targets", target))
        for target in self.readiness.login_targets:
            referenced.append(("readiness.login_targets", target))

        polling = getattr(self.harvest, "polling", None)
        if polling is not None and polling.completion_checks:
            for check in polling.completion_checks:
                referenced.append(("harvest.polling.completion_checks", check.target))
        observer = getattr(self.harvest, "observer", None)
        if observer is not None:
            referenced.append(("harvest.observer.observe_target", observer.observe_target))
            referenced.append(("harvest.observer.marker_target", observer.marker_target))

        for where, target in referenced:
            if target not in self.selectors:
                raise ValueError(f"{where} references undefined selector group '{target}'")
        return self

    @field_validator("hostnames")
    @classmethod
    def _normalise_hostnames(cls, values: List[str]) -> List[str]:
        normalised = [value.strip().lower().rstrip(".") for value in values]
        if not all(normalised):
            raise ValueError("hostnames must not be blank")
        return normalised

    @property
    def display_name(self) -> str:
        return self.name or self.provider_key

    def matches_location(self, url: Optional[str]) -> bool:
        """True for URLs under ``base_url`` or on one of ``hostnames`` (subdomains included)."""

        if not url:
            return False
        if url.startswith(self.base_url):
            return True
        hostname = urlsplit(url).hostname or ""
        return any(hostname == name or hostname.endswith(f".{name}") for name in self.hostnames)


class ProviderRegistry:
    """Holds validated provider configurations keyed by provider key."""

    def __init__(self, providers: Iterable[ProviderConfig] = ()) -> None:
        self._providers: Dict[str, ProviderConfig] = {}
        for provider in providers:
            self.register(provider)

    @classmethod
    def from_settings(cls, settings: Any) -> "ProviderRegistry":
        registry = cls()
        for key, raw in (settings.providers or {}).items():
            registry.register(cls.parse(raw, default_key=key))
        if settings.providers_dir is not None:
            registry.load_directory(Path(settings.providers_dir))
        return registry

    @staticmethod
    def parse(raw: Any, *, default_key: Optional[str] = None, source: Optional[str] = None) -> ProviderConfig:
        if not isinstance(raw, dict):
            raise ConfigurationError(f"provider definition {source or default_key} must be a mapping")
        data = dict(raw)
        if default_key is not None:
            data.setdefault("provider_key", default_key)
        try:
            return ProviderConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"invalid provider definition {source or default_key}: {exc.error_count()} error(s)",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    def load_directory(self, directory: Path) -> None:
        if not directory.is_dir():
            raise ConfigurationError(f"providers_dir {directory} is not a directory")
        for path in sorted(directory.iterdir()):
            suffix = path.suffix.lower()
            if suffix not in {".yaml", ".yml", ".json"}:
                continue
            try:
                with path.open("r", encoding="utf-8") as handle:
                    raw = yaml.safe_load(handle) if suffix != ".json" else json.load(handle)
            except (OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
                raise ConfigurationError(f"failed to read provider file {path.name}") from exc
            self.register(self.parse(raw, default_key=path.stem, source=path.name))

    def register(self, provider: ProviderConfig, *, replace: bool = False) -> None:
        if provider.provider_key in self._providers and not replace:
            raise ConfigurationError(f"provider '{provider.provider_key}' is defined twice")
        self._providers[provider.provider_key] = provider
        LOGGER.debug("Registered provider %s (%s)", provider.provider_key, provider.base_url)

    def get(self, provider_key: str) -> ProviderConfig:
        try:
            return self._providers[provider_key]
        except KeyError:
            raise ConfigurationError(f"unknown provider '{provider_key}'") from None

    def keys(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, provider_key: object) -> bool:
        return provider_key in self._providers

    def __len__(self) -> int:
        return len(self._providers)
