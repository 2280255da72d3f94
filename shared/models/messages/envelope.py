"""Request/response envelopes exchanged with sidecar clients."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class InboundMessage(BaseModel):
    """A typed request addressed to the dispatcher."""

    model_config = ConfigDict(extra="ignore")

    type: str = Field(..., min_length=1, description="Message type used for handler lookup.")
    payload: Any = Field(default=None, description="Handler-specific payload.")
    id: Optional[str] = Field(
        default=None,
        description="Optional client correlation id echoed back on WebSocket replies.",
    )


class ErrorInfo(BaseModel):
    """Normalised, client-safe description of a failure."""

    model_config = ConfigDict(populate_by_name=True)

    code: str
    message: str
    category: str = "unknown"
    retryable: bool = False
    strategy: Optional[str] = None
    elapsed_ms: Optional[int] = Field(default=None, alias="elapsedMs")
    details: Optional[dict[str, Any]] = None


class OutboundResponse(BaseModel):
    """Normalised dispatcher outcome."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    data: Any = None
    error: Optional[ErrorInfo] = None
    request_id: str = Field(..., alias="requestId")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
