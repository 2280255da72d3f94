"""Error taxonomy and client-facing error normalisation."""

from __future__ import annotations

import re
from typing import Any, Optional

from shared.models.messages import ErrorInfo


class SidecarError(RuntimeError):
    """Base class for failures raised by the orchestration engine."""

    code = "E.SIDECAR"
    category = "unknown"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        strategy: Optional[str] = None,
        elapsed_ms: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.strategy = strategy
        self.elapsed_ms = elapsed_ms
        self.details = details


class AcquisitionError(SidecarError):
    """No worker context could be obtained for a provider."""

    code = "E.CONTEXT.ACQUISITION"
    category = "context"
    retryable = True


class ResponsivenessError(SidecarError):
    """A context exists but does not answer the liveness probe."""

    code = "E.CONTEXT.UNRESPONSIVE"
    category = "context"
    retryable = True


class BroadcastError(SidecarError):
    """A scripted interaction step failed inside the context."""

    code = "E.BROADCAST.FAILED"
    category = "script_execution"
    retryable = True


class DetectionTimeout(SidecarError):
    """No completion signal arrived within the configured bound."""

    code = "E.DETECTION.TIMEOUT"
    category = "timeout"
    retryable = True


class HarvestEmptyResult(SidecarError):
    """Completion was detected but extraction produced no text."""

    code = "E.HARVEST.EMPTY"
    category = "harvest"
    retryable = True


class UnknownMessageType(SidecarError):
    code = "E.MESSAGE.UNKNOWN_TYPE"
    category = "validation"


class PayloadValidationError(SidecarError):
    code = "E.MESSAGE.INVALID_PAYLOAD"
    category = "validation"


class ConfigurationError(SidecarError):
    code = "E.CONFIG.INVALID"
    category = "configuration"


class FlightNotFound(SidecarError):
    code = "E.FLIGHT.NOT_FOUND"
    category = "validation"


class FlightCancelled(SidecarError):
    code = "E.FLIGHT.CANCELLED"
    category = "cancelled"


class HostUnavailable(SidecarError):
    """The context host cannot serve requests (e.g. no bridge connected)."""

    code = "E.HOST.UNAVAILABLE"
    category = "network"
    retryable = True


class UnexpectedFlightError(SidecarError):
    code = "E.FLIGHT.UNEXPECTED"


class WorkflowNotFound(SidecarError):
    code = "E.WORKFLOW.NOT_FOUND"
    category = "validation"


class WorkflowStillRunning(SidecarError):
    code = "E.WORKFLOW.RUNNING"
    category = "validation"


class WorkflowStepFailed(SidecarError):
    """A workflow step's flight did not complete; later steps were not run."""

    code = "E.WORKFLOW.STEP_FAILED"
    category = "workflow"


_FILE_PATH_WINDOWS = re.compile(r"[A-Za-z]:\\[^\s]+")
_FILE_PATH_POSIX = re.compile(r"/[^\s]+/")
_URL = re.compile(r"https?://[^\s]+")
_TOKEN = re.compile(r"[a-zA-Z0-9]{32,}")


def sanitize_error_message(message: Any) -> str:
    """Mask paths, URLs and token-like strings in an error message."""

    if not message or not isinstance(message, str):
        return "An unknown error occurred"
    sanitized = _URL.sub("[URL]", message)
    sanitized = _FILE_PATH_WINDOWS.sub("[FILE_PATH]", sanitized)
    sanitized = _FILE_PATH_POSIX.sub("[FILE_PATH]/", sanitized)
    return _TOKEN.sub("[TOKEN]", sanitized)


def describe_error(exc: BaseException) -> ErrorInfo:
    """Map an exception to the wire-level ``ErrorInfo`` structure."""

    if isinstance(exc, SidecarError):
        return ErrorInfo(
            code=exc.code,
            message=sanitize_error_message(exc.message),
            category=exc.category,
            retryable=exc.retryable,
            strategy=exc.strategy,
            elapsed_ms=exc.elapsed_ms,
            details=exc.details,
        )
    if isinstance(exc, TimeoutError):
        return ErrorInfo(code="E.TIMEOUT", message=sanitize_error_message(str(exc) or "operation timed out"), category="timeout")
    return ErrorInfo(
        code="E.INTERNAL",
        message=sanitize_error_message(str(exc)),
        category="unknown",
    )
