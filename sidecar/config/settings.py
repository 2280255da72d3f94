"""Sidecar configuration loading and validation."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Dict, Literal

import yaml
from pydantic import Field, NonNegativeInt, PositiveInt
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sidecar.errors import ConfigurationError

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("/etc/sidecar/sidecar.yaml"),
    Path("/etc/sidecar/sidecar.yml"),
    Path("./config/sidecar.yaml"),
    Path("./config/sidecar.yml"),
)

_CONFIG_SUFFIXES = frozenset({".yaml", ".yml", ".json"})


class SidecarSettings(BaseSettings):
    """Validated settings for the orchestration engine."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="SIDECAR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API surface
    host: str = Field(default="127.0.0.1", description="Interface the API server binds to.")
    port: PositiveInt = Field(default=8765, description="Port the API server listens on.")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level for the sidecar process.",
    )
    context_host: Literal["dummy", "bridge"] = Field(
        default="bridge",
        description="Execution context host implementation to use.",
    )
    bridge_request_timeout_ms: PositiveInt = Field(
        default=10000,
        description="Upper bound for a single request sent to the browser bridge.",
    )

    # Worker context pool
    creation_timeout_ms: PositiveInt = Field(
        default=30000,
        description="Maximum time to wait for a freshly opened context to become ready.",
    )
    creation_poll_interval_ms: PositiveInt = Field(
        default=1000,
        description="Interval between readiness checks of a context being created.",
    )
    probe_timeout_ms: PositiveInt = Field(
        default=5000,
        description="Upper bound for a single liveness probe.",
    )
    health_check_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Interval between health checks of idle contexts.",
    )
    error_grace_ms: NonNegativeInt = Field(
        default=5000,
        description="Delay between marking a context errored and disposing it (0 disposes immediately).",
    )

    # Flights
    default_timeout_ms: PositiveInt = Field(
        default=30000,
        description="Detection ceiling applied when a request does not specify timeoutMs.",
    )
    default_max_retries: NonNegativeInt = Field(
        default=2,
        description="Retry budget applied when neither the request nor the provider sets one.",
    )
    retry_delay_ms: PositiveInt = Field(
        default=2000,
        description="Base flight retry delay, multiplied by the attempt number.",
    )
    completed_retention_seconds: float = Field(
        default=60.0,
        ge=0,
        description="How long completed and failed flights stay queryable.",
    )
    cancelled_retention_seconds: float = Field(
        default=10.0,
        ge=0,
        description="How long cancelled flights stay queryable.",
    )
    sweep_interval_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Interval of the safety sweep over the flight table.",
    )
    terminal_max_age_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Terminal flights older than this are removed by the sweep.",
    )
    stuck_max_age_seconds: float = Field(
        default=900.0,
        gt=0,
        description="Non-terminal flights older than this are treated as leaked.",
    )

    # Dispatch
    log_payloads: bool = Field(
        default=False,
        description="Include payloads in dispatch log lines.",
    )
    detailed_metrics: bool = Field(
        default=False,
        description="Record resident memory deltas per dispatched message.",
    )

    # Providers and storage
    providers: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Inline provider definitions keyed by provider key.",
    )
    providers_dir: Path | None = Field(
        default=None,
        description="Directory holding one YAML/JSON provider definition per file.",
    )
    store_hot_size: PositiveInt = Field(
        default=10,
        description="Number of most recent flight snapshots kept in the hot list.",
    )
    store_max_records: PositiveInt = Field(
        default=1000,
        description="Flight and workflow records kept by the in-memory store before the oldest are evicted.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        if isinstance(value, str):
            return value.upper()
        return value

    config_path: Path | None = Field(
        default=None,
        description="Resolved path to the on-disk config that seeded the settings.",
        exclude=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[SidecarSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            cls._yaml_settings_source,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @staticmethod
    def _yaml_settings_source(settings_cls: type[SidecarSettings] | None = None) -> Dict[str, Any]:
        """Seed settings from ``SIDECAR_CONFIG_FILE`` or the first default location present.

        An explicitly named file must exist; default locations are optional.
        """

        explicit = os.getenv("SIDECAR_CONFIG_FILE")
        if explicit:
            path = Path(explicit).expanduser()
            if not path.is_file():
                raise ConfigurationError(
                    f"SIDECAR_CONFIG_FILE names {path}, which is not a file",
                    details={"path": str(path)},
                )
            return _read_sidecar_config(path)
        for path in DEFAULT_CONFIG_LOCATIONS:
            if path.is_file():
                return _read_sidecar_config(path)
        return {}


def _read_sidecar_config(path: Path) -> Dict[str, Any]:
    suffix = path.suffix.lower()
    if suffix not in _CONFIG_SUFFIXES:
        raise ConfigurationError(
            f"sidecar config {path.name} must be YAML or JSON",
            details={"path": str(path), "supported": sorted(_CONFIG_SUFFIXES)},
        )
    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle) if suffix == ".json" else yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigurationError(f"cannot read sidecar config {path}", details={"path": str(path)}) from exc
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(
            f"sidecar config {path.name} is not valid {suffix.lstrip('.').upper()}",
            details={"path": str(path), "reason": str(exc)},
        ) from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"sidecar config {path.name} must map setting names to values, not a {type(raw).__name__}",
            details={"path": str(path)},
        )
    raw.setdefault("config_path", path)
    return raw


@lru_cache()
def get_settings() -> SidecarSettings:
    """Return memoized sidecar settings."""

    settings = SidecarSettings()
    if settings.providers_dir is not None:
        settings.providers_dir = settings.providers_dir.expanduser().resolve()
    return settings
