"""Test doubles shared by the A2A runtime tests."""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path
from typing import AsyncIterator, List, Optional

from a2a_runtime.a2a.models import (
    Message,
    MessageSendConfiguration,
    MessageSendParams,
    Task,
    TaskState,
    TextPart,
    agent_text_message,
    create_message_id,
)
from a2a_runtime.error_profiles import ErrorProfile
from a2a_runtime.exceptions import UpstreamUnavailable
from a2a_runtime.executor import AgentExecutor
from a2a_runtime.lifecycle import TaskUpdate
from a2a_runtime.settings import PushNotificationSettings, Settings
from a2a_runtime.task_store import InMemoryTaskStore


def make_params(
    text: str,
    *,
    task_id: Optional[str] = None,
    context_id: Optional[str] = None,
    history_length: Optional[int] = None,
    configuration: Optional[MessageSendConfiguration] = None,
    metadata: Optional[dict] = None,
) -> MessageSendParams:
    if configuration is None and history_length is not None:
        configuration = MessageSendConfiguration(historyLength=history_length)
    message = Message(
        role="user",
        parts=[TextPart(text=text)],
        messageId=create_message_id(),
        taskId=task_id,
        contextId=context_id,
    )
    return MessageSendParams(message=message, configuration=configuration, metadata=metadata)


class ScriptedExecutor(AgentExecutor):
    """Plays back a fixed list of updates."""

    name = "scripted"
    description = "Replays scripted updates"

    def __init__(
        self,
        updates: List[TaskUpdate],
        result=None,
        resubscribe_updates: Optional[List[TaskUpdate]] = None,
    ):
        self.updates = updates
        self.result = result
        self.resubscribe_updates = resubscribe_updates
        self.seen_tasks: List[Optional[Task]] = []

    async def send_message(self, params, task):
        self.seen_tasks.append(task)
        return self.result if self.result is not None else self.updates[-1]

    async def stream_message(self, params, task) -> AsyncIterator[TaskUpdate]:
        self.seen_tasks.append(task)
        for update in self.updates:
            yield update

    def resubscribe(self, task):
        if self.resubscribe_updates is None:
            return super().resubscribe(task)
        return self._replay(self.resubscribe_updates)

    async def _replay(self, updates):
        for update in updates:
            yield update


class GatedExecutor(AgentExecutor):
    """Blocks inside each call until the test releases it."""

    name = "gated"
    description = "Waits for the test to release it"

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0
        self.cancels: List[str] = []

    async def send_message(self, params, task):
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return TaskUpdate(TaskState.INPUT_REQUIRED, message=agent_text_message("More please"))

    async def stream_message(self, params, task) -> AsyncIterator[TaskUpdate]:
        self.calls += 1
        yield TaskUpdate(TaskState.WORKING, message=agent_text_message("started"))
        self.entered.set()
        await self.release.wait()
        yield TaskUpdate(TaskState.COMPLETED, message=agent_text_message("done"))

    async def cancel(self, task_id: str) -> None:
        self.cancels.append(task_id)

    def reset(self) -> None:
        self.entered.clear()
        self.release.clear()


class FailingExecutor(AgentExecutor):
    """Raises from send, and from stream after one update."""

    name = "failing"
    description = "Always breaks"

    async def send_message(self, params, task):
        raise RuntimeError("boom")

    async def stream_message(self, params, task) -> AsyncIterator[TaskUpdate]:
        yield TaskUpdate(TaskState.WORKING, message=agent_text_message("trying"))
        raise RuntimeError("boom")


class SendOnlyExecutor(AgentExecutor):
    name = "send-only"

    async def send_message(self, params, task):
        return TaskUpdate(TaskState.COMPLETED, message=agent_text_message("ok"))


class FlakyStore(InMemoryTaskStore):
    """In-memory store whose saves start failing after ``healthy_saves`` calls."""

    def __init__(self, healthy_saves: int):
        super().__init__()
        self.healthy_saves = healthy_saves
        self.saves = 0

    async def save(self, task: Task) -> None:
        self.saves += 1
        if self.saves > self.healthy_saves:
            raise UpstreamUnavailable("Task store unavailable: disk full", task_id=task.id)
        await super().save(task)


def make_settings(**overrides) -> Settings:
    """Settings for tests, independent of the process environment."""
    push = overrides.pop(
        "push_notifications",
        PushNotificationSettings(
            enabled=False,
            webhook_timeout=5.0,
            retry_attempts=0,
            retry_delay=0.01,
            max_retry_delay=0.01,
            hmac_secret=None,
        ),
    )
    settings = Settings(
        auth_token=None,
        host="localhost",
        port=8001,
        public_url="http://testserver/a2a/rpc",
        agent_name="test-agent",
        agent_description="Agent under test",
        executor="hello",
        task_store="memory",
        database_path=Path("a2a_runtime_test.db"),
        busy_policy="reject",
        busy_timeout=30.0,
        streaming_enabled=True,
        stream_queue_size=16,
        error_profile=ErrorProfile.BASIC,
        log_level="WARNING",
        log_file=None,
        push_notifications=push,
    )
    return dataclasses.replace(settings, **overrides)
