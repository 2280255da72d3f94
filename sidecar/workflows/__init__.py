from .models import StepOutcome, WorkflowRecord, WorkflowState, WorkflowStep

__all__ = ["StepOutcome", "WorkflowRecord", "WorkflowState", "WorkflowStep"]
