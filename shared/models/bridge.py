"""Frames exchanged with the browser extension over the bridge WebSocket."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class BridgeRequest(_Frame):
    """Operation requested by the engine from the extension."""

    kind: Literal["request"] = "request"
    id: str
    op: Literal[
        "find",
        "open",
        "status",
        "ping",
        "close",
        "reload",
        "perform",
        "query",
        "extract",
        "watch.start",
        "watch.stop",
    ]
    args: dict[str, Any] = Field(default_factory=dict)


class BridgeResponse(_Frame):
    kind: Literal["response"] = "response"
    id: str
    ok: bool = True
    result: Any = None
    error: Optional[str] = None


class BridgeSignal(_Frame):
    """Unsolicited observation pushed by an armed watch."""

    kind: Literal["signal"] = "signal"
    watch_id: str = Field(..., alias="watchId")
    instance_id: str = Field(..., alias="instanceId")
    signal: str
    data: dict[str, Any] = Field(default_factory=dict)


class BridgeHello(_Frame):
    kind: Literal["hello"] = "hello"
    agent: str = "extension"
    version: Optional[str] = None


BridgeInbound = Annotated[Union[BridgeResponse, BridgeSignal, BridgeHello], Field(discriminator="kind")]

_INBOUND_ADAPTER: TypeAdapter[BridgeInbound] = TypeAdapter(BridgeInbound)


def parse_bridge_frame(raw: Any) -> BridgeResponse | BridgeSignal | BridgeHello:
    """Validate an inbound frame from the extension."""

    return _INBOUND_ADAPTER.validate_python(raw)
