"""Exception taxonomy for the A2A task runtime.

Every error that can cross the JSON-RPC boundary carries its own error code,
so the transport layer never has to guess how to report it.
"""

from __future__ import annotations

from typing import Any, Optional


class A2ARuntimeError(Exception):
    """Base class for errors reported to A2A callers."""

    code: int = -32603
    default_message: str = "Internal error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        task_id: Optional[str] = None,
        detail: Optional[Any] = None,
    ) -> None:
        self.message = message or self.default_message
        self.task_id = task_id
        self.detail = detail
        super().__init__(self.message)

    def error_detail(self) -> Optional[Any]:
        """Structured detail attached to the JSON-RPC error ``data`` field."""
        if self.detail is not None:
            return self.detail
        if self.task_id is not None:
            return {"taskId": self.task_id}
        return None


class InvalidParams(A2ARuntimeError):
    code = -32602
    default_message = "Invalid parameters"


class TaskNotFound(A2ARuntimeError):
    """The operation referenced an unknown task id."""

    code = -32001
    default_message = "Task not found"


class InvalidStateTransition(A2ARuntimeError):
    """Mutation attempted on a terminal task, or an illegal state jump."""

    code = -32002
    default_message = "Invalid task state transition"


class UnsupportedOperation(A2ARuntimeError):
    """The agent executor (or this server) does not implement the operation."""

    code = -32004
    default_message = "This operation is not supported"


class ExecutorFailure(A2ARuntimeError):
    """The agent executor raised while producing a result.

    Folded into a ``failed`` task status by the task manager instead of being
    reported as a transport error.
    """

    code = -32006
    default_message = "Agent execution failed"

    @classmethod
    def from_exception(cls, exc: Exception, *, task_id: Optional[str] = None) -> "ExecutorFailure":
        """Wrap whatever the executor raised, keeping it as ``__cause__``."""
        failure = cls(
            f"{cls.default_message}: {str(exc) or type(exc).__name__}",
            task_id=task_id,
            detail={"taskId": task_id, "errorType": type(exc).__name__},
        )
        failure.__cause__ = exc
        return failure


class TaskBusy(A2ARuntimeError):
    """Another call is already mutating the same task."""

    code = -32008
    default_message = "Task is busy"


class UpstreamUnavailable(A2ARuntimeError):
    """The task store (or another upstream dependency) could not be reached."""

    code = -32009
    default_message = "Upstream service unavailable"


class UntrustedAgentCard(A2ARuntimeError):
    """A discovery document failed verification."""

    code = -32010
    default_message = "Agent card could not be verified"
