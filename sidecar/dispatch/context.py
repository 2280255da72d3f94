"""Per-dispatch request context."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RequestContext:
    """Lives for exactly one ``MessageDispatcher.dispatch`` call."""

    request_id: str
    message_type: str
    payload: Any = None
    sender: Optional[Any] = None
    received_at: datetime = field(default_factory=_utcnow)
    started: float = field(default_factory=time.perf_counter)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)
