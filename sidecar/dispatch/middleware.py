"""Cross-cutting dispatch middleware: logging, metrics and payload validation."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import psutil
from pydantic import BaseModel, ValidationError

from shared.models.messages import MessageType
from sidecar.dispatch.context import RequestContext
from sidecar.dispatch.dispatcher import CallNext, Middleware
from sidecar.errors import PayloadValidationError

LOGGER = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def logging_middleware(*, include_payload: bool = False) -> Middleware:
    async def _log(ctx: RequestContext, call_next: CallNext) -> Any:
        level = logging.DEBUG if ctx.message_type == MessageType.PING.value else logging.INFO
        if include_payload:
            LOGGER.log(level, "-> %s [%s] payload=%s", ctx.message_type, ctx.request_id, ctx.payload)
        else:
            LOGGER.log(level, "-> %s [%s]", ctx.message_type, ctx.request_id)
        try:
            result = await call_next(ctx)
        except asyncio.CancelledError:
            LOGGER.info("x %s [%s] cancelled after %sms", ctx.message_type, ctx.request_id, ctx.elapsed_ms())
            raise
        except Exception as exc:
            LOGGER.warning(
                "x %s [%s] failed after %sms: %s",
                ctx.message_type,
                ctx.request_id,
                ctx.elapsed_ms(),
                exc,
            )
            raise
        LOGGER.log(level, "<- %s [%s] %sms", ctx.message_type, ctx.request_id, ctx.elapsed_ms())
        return result

    return _log


@dataclass
class _TypeMetrics:
    count: int = 0
    failures: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    memory_delta_bytes: int = 0


class MetricsMiddleware:
    """Per-message-type counters and timings."""

    def __init__(self, *, detailed: bool = False) -> None:
        self._detailed = detailed
        self._process: Optional[psutil.Process] = psutil.Process() if detailed else None
        self._metrics: Dict[str, _TypeMetrics] = {}

    async def __call__(self, ctx: RequestContext, call_next: CallNext) -> Any:
        rss_before = self._rss()
        started = time.perf_counter()
        failed = False
        try:
            return await call_next(ctx)
        except Exception:
            failed = True
            raise
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            metrics = self._metrics.setdefault(ctx.message_type, _TypeMetrics())
            metrics.count += 1
            metrics.failures += int(failed)
            metrics.total_ms += duration_ms
            metrics.max_ms = max(metrics.max_ms, duration_ms)
            if rss_before is not None:
                metrics.memory_delta_bytes += (self._rss() or rss_before) - rss_before

    def _rss(self) -> Optional[int]:
        if self._process is None:
            return None
        try:
            return self._process.memory_info().rss
        except psutil.Error:
            return None

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        for message_type, metrics in sorted(self._metrics.items()):
            entry: Dict[str, Any] = {
                "count": metrics.count,
                "failures": metrics.failures,
                "avgMs": round(metrics.total_ms / metrics.count, 2) if metrics.count else 0.0,
                "maxMs": round(metrics.max_ms, 2),
            }
            if self._detailed:
                entry["memoryDeltaBytes"] = metrics.memory_delta_bytes
            result[message_type] = entry
        return result


def validate_payload(schema: Type[ModelT], message_type: str, payload: Any) -> ModelT:
    """Coerce ``payload`` into ``schema`` or raise ``PayloadValidationError``."""

    if isinstance(payload, schema):
        return payload
    try:
        return schema.model_validate(payload if payload is not None else {})
    except ValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in error["loc"]) or "payload" for error in exc.errors())
        raise PayloadValidationError(
            f"invalid payload for {message_type}: {fields}",
            details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc


class ValidationMiddleware:
    """Short-circuits messages whose payload does not match the declared schema."""

    def __init__(self, schemas: Mapping[str, Type[BaseModel]]) -> None:
        self._schemas = {str(getattr(key, "value", key)): schema for key, schema in schemas.items()}

    async def __call__(self, ctx: RequestContext, call_next: CallNext) -> Any:
        if ctx.message_type == MessageType.PING.value:
            return await call_next(ctx)
        schema = self._schemas.get(ctx.message_type)
        if schema is not None:
            ctx.payload = validate_payload(schema, ctx.message_type, ctx.payload)
        return await call_next(ctx)
