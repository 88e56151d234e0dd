"""
Task Lifecycle Engine

Owns the ``Task`` state machine: transition validation, history
accumulation and artifact attachment. Every function here is pure with
respect to its inputs: it returns a new ``Task`` and never mutates the one
it was given, so the same inputs (including ``timestamp``) always produce
the same result.

States::

    submitted ──► working ──► input_required ──► working ...
        │            │
        └────────────┴──► completed | failed | canceled   (terminal)

``canceled`` is only reachable through :func:`cancel_task`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Union

from .a2a.models import (
    Artifact,
    Message,
    Task,
    TaskArtifactUpdateEvent,
    TaskEvent,
    TaskState,
    TaskStatus,
    TaskStatusUpdateEvent,
    agent_text_message,
    create_context_id,
    create_task_id,
    current_timestamp,
)
from .exceptions import InvalidStateTransition

TERMINAL_STATES: FrozenSet[TaskState] = frozenset(
    {TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELED}
)

# A streamed call ends once the task is terminal or waits on the client.
STREAM_ENDING_STATES: FrozenSet[TaskState] = TERMINAL_STATES | {TaskState.INPUT_REQUIRED}

VALID_TRANSITIONS: Dict[TaskState, FrozenSet[TaskState]] = {
    TaskState.SUBMITTED: frozenset(
        {
            TaskState.WORKING,
            TaskState.INPUT_REQUIRED,
            TaskState.COMPLETED,
            TaskState.FAILED,
            TaskState.CANCELED,
        }
    ),
    TaskState.WORKING: frozenset(
        {
            TaskState.WORKING,
            TaskState.INPUT_REQUIRED,
            TaskState.COMPLETED,
            TaskState.FAILED,
            TaskState.CANCELED,
        }
    ),
    TaskState.INPUT_REQUIRED: frozenset(
        {TaskState.WORKING, TaskState.FAILED, TaskState.CANCELED}
    ),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.CANCELED: frozenset(),
}


@dataclass(frozen=True)
class TaskUpdate:
    """A delta reported by the agent executor.

    ``state`` is the state the executor wants the task to be in after the
    update; ``message`` and ``artifact`` are optional payloads folded into
    the task's history and artifacts. ``append`` continues an artifact with
    the same ``artifactId`` instead of adding a new one.
    """

    state: TaskState
    message: Optional[Message] = None
    artifact: Optional[Artifact] = None
    append: bool = False
    last_chunk: bool = False


def is_terminal(state: TaskState) -> bool:
    return state in TERMINAL_STATES


def ends_stream(state: TaskState) -> bool:
    return state in STREAM_ENDING_STATES


def validate_transition(task: Task, target: TaskState) -> None:
    """Raise ``InvalidStateTransition`` unless ``task`` may move to ``target``."""
    current = task.status.state
    if is_terminal(current):
        raise InvalidStateTransition(
            f"Task is already {current.value}; no further transitions are accepted",
            task_id=task.id,
            detail={"taskId": task.id, "from": current.value, "to": target.value},
        )
    if target not in VALID_TRANSITIONS[current]:
        raise InvalidStateTransition(
            f"Cannot move task from {current.value} to {target.value}",
            task_id=task.id,
            detail={"taskId": task.id, "from": current.value, "to": target.value},
        )


def _stamp(message: Message, task: Task) -> Message:
    return message.model_copy(
        update={"taskId": task.id, "contextId": task.contextId}, deep=True
    )


def _fold_artifact(task: Task, artifact: Artifact, append: bool, last_chunk: bool) -> None:
    incoming = artifact.model_copy(update={"lastChunk": last_chunk or None}, deep=True)
    if append:
        for index, existing in enumerate(task.artifacts):
            if existing.artifactId == incoming.artifactId:
                task.artifacts[index] = existing.model_copy(
                    update={
                        "parts": [*existing.parts, *incoming.parts],
                        "lastChunk": incoming.lastChunk,
                    }
                )
                return
    task.artifacts.append(incoming)


def _transition(
    task: Task,
    state: TaskState,
    *,
    message: Optional[Message] = None,
    artifact: Optional[Artifact] = None,
    append: bool = False,
    last_chunk: bool = False,
    timestamp: Optional[str] = None,
) -> Task:
    validate_transition(task, state)

    updated = task.model_copy(deep=True)
    stamped = _stamp(message, task) if message is not None else None
    if stamped is not None:
        updated.history.append(stamped)
    if artifact is not None:
        _fold_artifact(updated, artifact, append, last_chunk)
    updated.status = TaskStatus(
        state=state,
        message=stamped,
        timestamp=timestamp or current_timestamp(),
    )
    return updated


def new_task(
    message: Message,
    *,
    context_id: Optional[str] = None,
    task_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    timestamp: Optional[str] = None,
) -> Task:
    """Create a ``submitted`` task whose history starts with ``message``.

    The context id is taken from the argument, then from the message, and
    only generated when neither supplies one.
    """
    task = Task(
        id=task_id or create_task_id(),
        contextId=context_id or message.contextId or create_context_id(),
        status=TaskStatus(
            state=TaskState.SUBMITTED,
            timestamp=timestamp or current_timestamp(),
        ),
        metadata=metadata or None,
    )
    task.history.append(_stamp(message, task))
    return task


def resume_task(task: Task, message: Message, *, timestamp: Optional[str] = None) -> Task:
    """Fold new client input into a task and move it (back) to ``working``."""
    validate_transition(task, TaskState.WORKING)
    updated = task.model_copy(deep=True)
    updated.history.append(_stamp(message, task))
    updated.status = TaskStatus(
        state=TaskState.WORKING,
        timestamp=timestamp or current_timestamp(),
    )
    return updated


def apply_update(task: Task, update: TaskUpdate, *, timestamp: Optional[str] = None) -> Task:
    """Apply an executor-reported update to ``task``."""
    if update.state is TaskState.CANCELED:
        raise InvalidStateTransition(
            "Agent executors cannot cancel tasks; use the cancel operation",
            task_id=task.id,
        )
    if update.state is TaskState.INPUT_REQUIRED and update.message is None:
        raise InvalidStateTransition(
            "input_required needs a message explaining what input is expected",
            task_id=task.id,
        )
    return _transition(
        task,
        update.state,
        message=update.message,
        artifact=update.artifact,
        append=update.append,
        last_chunk=update.last_chunk,
        timestamp=timestamp,
    )


def fail_task(
    task: Task,
    reason: Union[str, Message],
    *,
    timestamp: Optional[str] = None,
) -> Task:
    """Move a task to ``failed`` with an agent message explaining why.

    Pass a prebuilt ``Message`` when the result must be reproducible; a
    plain string is wrapped in a new agent message with a fresh id.
    """
    message = reason if isinstance(reason, Message) else agent_text_message(reason)
    return _transition(task, TaskState.FAILED, message=message, timestamp=timestamp)


def cancel_task(
    task: Task,
    *,
    message: Optional[Message] = None,
    timestamp: Optional[str] = None,
) -> Task:
    """Move a non-terminal task to ``canceled``."""
    return _transition(task, TaskState.CANCELED, message=message, timestamp=timestamp)


def status_event(task: Task, *, final: bool) -> TaskStatusUpdateEvent:
    return TaskStatusUpdateEvent(
        taskId=task.id,
        contextId=task.contextId,
        status=task.status.model_copy(deep=True),
        final=final,
    )


def build_event(task: Task, update: TaskUpdate, *, final: bool) -> TaskEvent:
    """Describe an applied update as the event streamed to the caller.

    Updates carrying an artifact become ``artifact-update`` events holding
    just the chunk that was reported (``append`` tells the client to extend
    the artifact it already has); everything else becomes a
    ``status-update``.
    """
    if update.artifact is None:
        return status_event(task, final=final)

    last_chunk = final or update.last_chunk
    return TaskArtifactUpdateEvent(
        taskId=task.id,
        contextId=task.contextId,
        artifact=update.artifact.model_copy(update={"lastChunk": last_chunk or None}, deep=True),
        append=update.append or None,
        lastChunk=last_chunk,
    )


def mark_final(event: TaskEvent) -> TaskEvent:
    """Return a copy of ``event`` flagged as the last one of its call."""
    if isinstance(event, TaskStatusUpdateEvent):
        return event.model_copy(update={"final": True})
    artifact = event.artifact.model_copy(update={"lastChunk": True})
    return event.model_copy(update={"lastChunk": True, "artifact": artifact})
