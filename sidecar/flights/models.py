"""Flight records and the transitions allowed between their states."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shared.models.messages import ErrorInfo


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlightState(str, Enum):
    LAUNCHING = "LAUNCHING"
    IN_FLIGHT = "IN_FLIGHT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES: FrozenSet[FlightState] = frozenset(
    {FlightState.COMPLETED, FlightState.FAILED, FlightState.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[FlightState, FrozenSet[FlightState]] = {
    FlightState.LAUNCHING: frozenset({FlightState.IN_FLIGHT, FlightState.FAILED, FlightState.CANCELLED}),
    FlightState.IN_FLIGHT: frozenset({FlightState.COMPLETED, FlightState.FAILED, FlightState.CANCELLED}),
    FlightState.FAILED: frozenset({FlightState.LAUNCHING}),
    FlightState.COMPLETED: frozenset(),
    FlightState.CANCELLED: frozenset(),
}


class InvalidTransition(RuntimeError):
    """Raised when a flight is asked to move along an edge that does not exist."""


@dataclass
class FlightMetadata:
    timeout_ms: int
    max_retries: int = 0
    retry_count: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    source: Optional[FlightState]
    target: FlightState
    at: datetime
    reason: Optional[str] = None


@dataclass
class Flight:
    flight_id: str
    provider_key: str
    prompt: str
    metadata: FlightMetadata
    state: FlightState = FlightState.LAUNCHING
    context_id: Optional[str] = None
    start_time: datetime = field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    result: Optional[str] = None
    error: Optional[ErrorInfo] = None
    exception: Optional[BaseException] = field(default=None, repr=False)
    winner: Optional[str] = None
    harvest_strategy: Optional[str] = None
    elapsed_ms: Optional[int] = None
    attempts: int = 1
    transitions: List[Transition] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.transitions:
            self.transitions.append(Transition(None, self.state, self.start_time))

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, target: FlightState) -> bool:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            return False
        if self.state is FlightState.FAILED and target is FlightState.LAUNCHING:
            return self.metadata.retry_count < self.metadata.max_retries
        return True

    def transition(self, target: FlightState, *, reason: Optional[str] = None) -> None:
        if not self.can_transition(target):
            raise InvalidTransition(f"flight {self.flight_id}: {self.state.value} -> {target.value} is not allowed")
        now = _utcnow()
        self.transitions.append(Transition(self.state, target, now, reason))
        self.state = target
        if target is not FlightState.IN_FLIGHT:
            self.context_id = None
        self.end_time = now if target in TERMINAL_STATES else None

    def snapshot(self) -> "FlightSnapshot":
        return FlightSnapshot(
            flight_id=self.flight_id,
            provider_key=self.provider_key,
            prompt=self.prompt,
            state=self.state,
            context_id=self.context_id,
            start_time=self.start_time,
            end_time=self.end_time,
            result=self.result,
            error=self.error,
            metadata={
                "timeoutMs": self.metadata.timeout_ms,
                "retryCount": self.metadata.retry_count,
                "maxRetries": self.metadata.max_retries,
                **({"extra": self.metadata.extra} if self.metadata.extra else {}),
            },
            winner=self.winner,
            harvest_strategy=self.harvest_strategy,
            elapsed_ms=self.elapsed_ms,
            attempts=self.attempts,
        )


class FlightSnapshot(BaseModel):
    """Serialisable view of a flight handed to clients and the session store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    flight_id: str
    provider_key: str
    prompt: str
    state: FlightState
    context_id: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    result: Optional[str] = None
    error: Optional[ErrorInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    winner: Optional[str] = None
    harvest_strategy: Optional[str] = None
    elapsed_ms: Optional[int] = None
    attempts: int = 1

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
