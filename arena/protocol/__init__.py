"""Protocol module: request schemas and workflow results."""
from .responses import ResultStatus, WorkflowResult, run_workflow

__all__ = ["ResultStatus", "WorkflowResult", "run_workflow"]
