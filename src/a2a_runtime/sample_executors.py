"""
Sample agent executors.

``HelloWorldExecutor`` answers every message with "Hello World";
``CurrencyExecutor`` runs a small multi-turn conversion dialogue that asks
for the target currency when it is missing. Both are selected through the
``A2A_EXECUTOR`` setting.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple, Type

from .a2a.models import (
    AgentSkill,
    Artifact,
    DataPart,
    Message,
    MessageSendParams,
    Task,
    TaskState,
    TextPart,
    agent_text_message,
    create_artifact_id,
    message_text,
)
from .executor import AgentExecutor, SendResult
from .lifecycle import TaskUpdate

logger = logging.getLogger(__name__)


class _CooperativeCancelMixin:
    """Track running tasks and the ones asked to stop."""

    def _init_cancel_tracking(self) -> None:
        self._active: Set[str] = set()
        self._canceled: Set[str] = set()

    async def cancel(self, task_id: str) -> None:
        if task_id in self._active:
            self._canceled.add(task_id)
            logger.info("Cancellation requested", extra={"task_id": task_id})

    def _start(self, task_id: str) -> None:
        self._active.add(task_id)
        self._canceled.discard(task_id)

    def _finish(self, task_id: str) -> None:
        self._active.discard(task_id)
        self._canceled.discard(task_id)

    def _is_canceled(self, task_id: str) -> bool:
        return task_id in self._canceled


class HelloWorldExecutor(_CooperativeCancelMixin, AgentExecutor):
    """Replies "Hello World", streamed as "Hello " then "World"."""

    name = "hello-world"
    description = "Answers every message with Hello World"
    skills = [
        AgentSkill(
            id="hello_world",
            name="Returns hello world",
            description="Just returns hello world",
            tags=["hello world"],
            examples=["hi", "hello world"],
        )
    ]

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self._init_cancel_tracking()

    async def send_message(
        self, params: MessageSendParams, task: Optional[Task]
    ) -> SendResult:
        return agent_text_message("Hello World")

    async def stream_message(
        self, params: MessageSendParams, task: Optional[Task]
    ) -> AsyncIterator[TaskUpdate]:
        task_id = task.id if task is not None else params.message.messageId
        self._start(task_id)
        try:
            yield TaskUpdate(TaskState.WORKING, message=agent_text_message("Hello "))
            await asyncio.sleep(self.delay)
            if self._is_canceled(task_id):
                return
            yield TaskUpdate(
                TaskState.COMPLETED, message=agent_text_message("World", final=True)
            )
        finally:
            self._finish(task_id)


EXCHANGE_RATES: Dict[str, float] = {
    "USD": 1.0,
    "GBP": 0.79,
    "EUR": 0.92,
    "JPY": 149.5,
}

_AMOUNT_RE = re.compile(r"\d+(?:\.\d+)?")
_CODE_RE = re.compile(r"\b[A-Za-z]{3}\b")

ASK_TARGET = "In which currency?"
ASK_REQUEST = "How much, and in which currency? For example: convert 100 USD"


def parse_conversion_request(texts: List[str]) -> Tuple[Optional[float], List[str]]:
    """Extract the first amount and every known currency code, in order."""
    amount: Optional[float] = None
    codes: List[str] = []
    for text in texts:
        if amount is None:
            match = _AMOUNT_RE.search(text)
            if match:
                amount = float(match.group())
        for word in _CODE_RE.findall(text):
            code = word.upper()
            if code in EXCHANGE_RATES:
                codes.append(code)
    return amount, codes


def convert(amount: float, source: str, target: str) -> float:
    return amount / EXCHANGE_RATES[source] * EXCHANGE_RATES[target]


class CurrencyExecutor(_CooperativeCancelMixin, AgentExecutor):
    """Converts amounts between currencies using a static rate table.

    The conversation is read from the user messages in the task history, so
    a request split across turns ("convert 100 USD", then "GBP") resolves
    the same way as a single "convert 100 USD to GBP".
    """

    name = "currency-agent"
    description = "Converts amounts between currencies"
    skills = [
        AgentSkill(
            id="convert_currency",
            name="Currency exchange rates",
            description="Converts an amount from one currency to another",
            tags=["currency conversion", "currency exchange"],
            examples=["convert 100 USD to GBP"],
        )
    ]

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self._init_cancel_tracking()

    def _user_texts(self, params: MessageSendParams, task: Optional[Task]) -> List[str]:
        messages: List[Message] = task.history if task is not None else [params.message]
        return [message_text(m) for m in messages if m.role == "user"]

    def _outcome(self, params: MessageSendParams, task: Optional[Task]) -> List[TaskUpdate]:
        amount, codes = parse_conversion_request(self._user_texts(params, task))
        if amount is None or not codes:
            return [TaskUpdate(TaskState.INPUT_REQUIRED, message=agent_text_message(ASK_REQUEST))]
        if len(codes) < 2:
            return [TaskUpdate(TaskState.INPUT_REQUIRED, message=agent_text_message(ASK_TARGET))]

        source, target = codes[0], codes[1]
        result = round(convert(amount, source, target), 2)
        summary = f"{amount:g} {source} = {result:.2f} {target}"
        artifact = Artifact(
            artifactId=create_artifact_id(),
            name="conversion",
            description="Converted amount",
            parts=[
                TextPart(text=summary),
                DataPart(
                    data={
                        "amount": amount,
                        "from": source,
                        "to": target,
                        "rate": round(EXCHANGE_RATES[target] / EXCHANGE_RATES[source], 6),
                        "result": result,
                    }
                ),
            ],
        )
        return [
            TaskUpdate(TaskState.WORKING, artifact=artifact, last_chunk=True),
            TaskUpdate(TaskState.COMPLETED, message=agent_text_message(summary, final=True)),
        ]

    async def send_message(
        self, params: MessageSendParams, task: Optional[Task]
    ) -> SendResult:
        updates = self._outcome(params, task)
        final = updates[-1]
        if len(updates) == 1:
            return final
        # A single transition carries both the artifact and the answer.
        artifact = updates[0].artifact
        return TaskUpdate(final.state, message=final.message, artifact=artifact, last_chunk=True)

    async def stream_message(
        self, params: MessageSendParams, task: Optional[Task]
    ) -> AsyncIterator[TaskUpdate]:
        task_id = task.id if task is not None else params.message.messageId
        self._start(task_id)
        try:
            yield TaskUpdate(
                TaskState.WORKING,
                message=agent_text_message("Looking up exchange rates..."),
            )
            for update in self._outcome(params, task):
                await asyncio.sleep(self.delay)
                if self._is_canceled(task_id):
                    return
                yield update
        finally:
            self._finish(task_id)


EXECUTORS: Dict[str, Type[AgentExecutor]] = {
    "hello": HelloWorldExecutor,
    "currency": CurrencyExecutor,
}


def create_executor(name: str) -> AgentExecutor:
    """Instantiate the executor registered under ``name``."""
    try:
        executor_cls = EXECUTORS[name]
    except KeyError as exc:
        raise ValueError(
            f"Unknown executor '{name}'. Available executors: {', '.join(EXECUTORS)}"
        ) from exc
    return executor_cls()
