from .context import RequestContext
from .dispatcher import MessageDispatcher
from .middleware import MetricsMiddleware, ValidationMiddleware, logging_middleware, validate_payload

__all__ = [
    "MessageDispatcher",
    "MetricsMiddleware",
    "RequestContext",
    "ValidationMiddleware",
    "logging_middleware",
    "validate_payload",
]
