"""Routes typed inbound messages through middleware to their handlers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from shared.models.messages import ErrorInfo, InboundMessage, OutboundResponse
from sidecar.dispatch.context import RequestContext
from sidecar.errors import SidecarError, UnknownMessageType, describe_error

LOGGER = logging.getLogger(__name__)

Handler = Callable[[Any, RequestContext], Awaitable[Any]]
CallNext = Callable[[RequestContext], Awaitable[Any]]
Middleware = Callable[[RequestContext, CallNext], Awaitable[Any]]


class MessageDispatcher:
    """One handler per message type; middleware wraps every handler call."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}
        self._middleware: List[Middleware] = []

    def register(self, message_type: str, handler: Handler, *, replace: bool = False) -> None:
        key = str(getattr(message_type, "value", message_type))
        if key in self._handlers and not replace:
            raise ValueError(f"handler already registered for {key}")
        self._handlers[key] = handler

    def use(self, middleware: Middleware) -> None:
        self._middleware.append(middleware)

    @property
    def message_types(self) -> List[str]:
        return sorted(self._handlers)

    async def dispatch(self, message: Any, sender: Optional[Any] = None) -> OutboundResponse:
        request_id = str(uuid.uuid4())
        try:
            inbound = message if isinstance(message, InboundMessage) else InboundMessage.model_validate(message)
        except ValidationError as exc:
            LOGGER.warning("Rejected malformed message envelope [%s]", request_id)
            return OutboundResponse(
                success=False,
                error=ErrorInfo(
                    code="E.MESSAGE.INVALID",
                    message="message must be an object with a non-empty 'type'",
                    category="validation",
                    details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
                ),
                request_id=request_id,
            )

        ctx = RequestContext(
            request_id=request_id,
            message_type=inbound.type,
            payload=inbound.payload,
            sender=sender,
        )
        handler = self._handlers.get(inbound.type)
        if handler is None:
            error = UnknownMessageType(f"no handler registered for message type '{inbound.type}'")
            LOGGER.warning("Unknown message type %s [%s]", inbound.type, request_id)
            return OutboundResponse(success=False, error=describe_error(error), request_id=request_id)

        call = self._build_chain(handler)
        try:
            data = await call(ctx)
        except asyncio.CancelledError:
            raise
        except SidecarError as exc:
            return OutboundResponse(success=False, error=describe_error(exc), request_id=request_id)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Handler for %s failed [%s]", inbound.type, request_id)
            return OutboundResponse(success=False, error=describe_error(exc), request_id=request_id)
        return OutboundResponse(success=True, data=data, request_id=request_id)

    def _build_chain(self, handler: Handler) -> CallNext:
        async def _endpoint(ctx: RequestContext) -> Any:
            return await handler(ctx.payload, ctx)

        call: CallNext = _endpoint
        for middleware in reversed(self._middleware):
            call = _bind(middleware, call)
        return call


def _bind(middleware: Middleware, call_next: CallNext) -> CallNext:
    async def _call(ctx: RequestContext) -> Any:
        return await middleware(ctx, call_next)

    return _call
