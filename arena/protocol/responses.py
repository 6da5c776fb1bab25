"""Workflow results and their transport status codes."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Optional

from arena.errors import ArenaError, ErrorKind
from arena.utils.logger import get_logger

logger = get_logger(__name__)


class ResultStatus(str, Enum):
    """Outcome classification returned with every workflow result."""
    OK = "ok"
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL_ERROR = "internal_error"


_KIND_STATUS = {
    ErrorKind.INVALID_INPUT: ResultStatus.INVALID_INPUT,
    ErrorKind.UNAUTHORIZED: ResultStatus.UNAUTHORIZED,
    ErrorKind.FORBIDDEN: ResultStatus.FORBIDDEN,
    ErrorKind.NOT_FOUND: ResultStatus.NOT_FOUND,
    ErrorKind.CONFLICT: ResultStatus.CONFLICT,
    ErrorKind.INTERNAL: ResultStatus.INTERNAL_ERROR,
}

HTTP_STATUS = {
    ResultStatus.OK: 200,
    ResultStatus.INVALID_INPUT: 400,
    ResultStatus.UNAUTHORIZED: 401,
    ResultStatus.FORBIDDEN: 403,
    ResultStatus.NOT_FOUND: 404,
    ResultStatus.CONFLICT: 409,
    ResultStatus.INTERNAL_ERROR: 500,
}

INTERNAL_MESSAGE = "Server Error"


@dataclass
class WorkflowResult:
    """``{success, data|message}`` plus a status classification."""
    success: bool
    status: ResultStatus
    data: Any = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None) -> "WorkflowResult":
        return cls(success=True, status=ResultStatus.OK, data=data, message=message)

    @classmethod
    def from_error(cls, error: ArenaError) -> "WorkflowResult":
        status = _KIND_STATUS[error.kind]
        message = INTERNAL_MESSAGE if status == ResultStatus.INTERNAL_ERROR else error.message
        return cls(success=False, status=status, message=message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.status]

    def to_dict(self) -> dict:
        body = {"success": self.success}
        if self.data is not None:
            body["data"] = self.data
        if self.message is not None:
            body["message"] = self.message
        return body


async def run_workflow(workflow: Awaitable, present=None) -> WorkflowResult:
    """Await a workflow and classify its outcome.

    Args:
        workflow: Awaitable running exactly one workflow.
        present: Optional callable turning the workflow's return value into
            response data.

    Returns:
        Success with the (presented) value, or failure with a message.
        Unexpected exceptions are logged with traceback and reported as an
        opaque internal error.
    """
    try:
        value = await workflow
    except ArenaError as e:
        if e.kind == ErrorKind.INTERNAL:
            logger.error(f"Workflow failed: {e.message}", exc_info=True)
        else:
            logger.info(f"Workflow rejected ({e.kind.value}): {e.message}")
        return WorkflowResult.from_error(e)
    except Exception:
        logger.exception("Unexpected workflow failure")
        return WorkflowResult(
            success=False, status=ResultStatus.INTERNAL_ERROR, message=INTERNAL_MESSAGE
        )
    return WorkflowResult.ok(present(value) if present else value)
