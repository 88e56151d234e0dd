"""
Agent Executor contract.

An executor holds the agent's actual reasoning. The task manager invokes it
and folds whatever it reports through the lifecycle engine; executors never
touch the task store and never mutate the ``Task`` they are shown.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Union

from .a2a.models import AgentSkill, Message, MessageSendParams, Task
from .exceptions import UnsupportedOperation
from .lifecycle import TaskUpdate

SendResult = Union[Message, TaskUpdate]


class AgentExecutor(ABC):
    """Base class for pluggable agent executors.

    ``send_message`` is mandatory. Streaming, cancellation and
    resubscription are optional capabilities; the default implementations
    raise ``UnsupportedOperation``.

    The ``task`` argument is a snapshot of the task after the incoming
    message has been folded into its history.
    """

    name: str = "agent"
    description: str = "A2A agent"
    skills: List[AgentSkill] = []

    @abstractmethod
    async def send_message(
        self, params: MessageSendParams, task: Optional[Task]
    ) -> SendResult:
        """Handle one message and report its outcome.

        Return a ``TaskUpdate`` to drive the task's state, or a bare
        ``Message`` when the interaction does not need to be tracked as a
        task.
        """

    def stream_message(
        self, params: MessageSendParams, task: Optional[Task]
    ) -> AsyncIterator[TaskUpdate]:
        """Return a finite, ordered async iterator of updates."""
        raise UnsupportedOperation(f"{self.name} does not support streaming")

    async def cancel(self, task_id: str) -> None:
        """Ask in-flight work for ``task_id`` to stop producing updates."""
        raise UnsupportedOperation(
            f"{self.name} does not support cancellation", task_id=task_id
        )

    def resubscribe(self, task: Task) -> AsyncIterator[TaskUpdate]:
        """Replay the remaining updates of an in-flight task."""
        raise UnsupportedOperation(
            f"{self.name} does not support resubscription", task_id=task.id
        )

    @property
    def supports_streaming(self) -> bool:
        return type(self).stream_message is not AgentExecutor.stream_message
