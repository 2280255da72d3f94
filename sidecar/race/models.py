"""Values produced by the completion race engine."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

from sidecar.errors import describe_error

SignalSource = Literal["network", "structural", "explicit", "timeout"]


@dataclass(frozen=True)
class CompletionSignal:
    """Evidence that the remote side finished; consumed by the detection race."""

    source: SignalSource
    flight_id: Optional[str]
    observed_at: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HarvestReport:
    success: bool
    strategy: str
    method: str
    duration_ms: int
    data: Optional[str] = None
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "meta": {"strategy": self.strategy, "method": self.method, "durationMs": self.duration_ms},
        }
        if self.success:
            payload["data"] = self.data
        elif self.error is not None:
            payload["error"] = describe_error(self.error).model_dump(by_alias=True, exclude_none=True)
        return payload


@dataclass
class RaceOutcome:
    text: str
    signal: CompletionSignal
    harvest_strategy: str
    detection_elapsed_ms: int
    elapsed_ms: int

    @property
    def winner(self) -> str:
        return self.signal.source
