from .models import ContextState, WorkerContext
from .pool import WorkerContextPool

__all__ = ["ContextState", "WorkerContext", "WorkerContextPool"]
