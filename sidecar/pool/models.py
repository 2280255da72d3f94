"""Worker context records tracked by the pool."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContextState(str, Enum):
    CREATING = "CREATING"
    IDLE = "IDLE"
    BUSY = "BUSY"
    ERROR = "ERROR"


@dataclass
class WorkerContext:
    """A pooled host instance bound to one provider."""

    context_id: str
    provider_key: str
    state: ContextState = ContextState.CREATING
    location_url: Optional[str] = None
    adopted: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    last_liveness_check: Optional[datetime] = None
    flight_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contextId": self.context_id,
            "providerKey": self.provider_key,
            "state": self.state.value,
            "locationUrl": self.location_url,
            "adopted": self.adopted,
            "createdAt": self.created_at.isoformat(),
            "lastLivenessCheck": self.last_liveness_check.isoformat() if self.last_liveness_check else None,
            "flightId": self.flight_id,
            "error": self.error,
        }
