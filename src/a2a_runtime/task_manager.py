"""
A2A Task Manager

Request router for the A2A task protocol. Resolves (or creates) the task a
call refers to, invokes the agent executor and drives the lifecycle engine
with whatever the executor reports. Streaming calls are served by a
background producer that folds, persists and then publishes each update.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from .a2a.models import (
    DeleteTaskPushNotificationConfigParams,
    GetTaskPushNotificationConfigParams,
    ListTasksParams,
    ListTasksResult,
    Message,
    MessageSendParams,
    Task,
    TaskEvent,
    TaskIdParams,
    TaskPushNotificationConfig,
    TaskQueryParams,
    TaskState,
)
from .exceptions import (
    A2ARuntimeError,
    ExecutorFailure,
    InvalidParams,
    InvalidStateTransition,
    TaskBusy,
    TaskNotFound,
    UnsupportedOperation,
)
from .executor import AgentExecutor
from .lifecycle import (
    TaskUpdate,
    apply_update,
    build_event,
    cancel_task as mark_canceled,
    ends_stream,
    fail_task,
    is_terminal,
    mark_final,
    new_task,
    resume_task,
    status_event,
)
from .logging_config import task_log_context
from .push_notification_manager import PushNotificationManager
from .streaming_manager import StreamingChannel, StreamingManager, TaskEventStream
from .task_store import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

# Sentinels returned while waiting on the executor's next update
_EXHAUSTED = object()
_CANCELED = object()  # canceled while the executor was producing; drained in background
_HALTED = object()  # canceled before asking the executor for more

PendingEvent = Tuple[Task, TaskEvent]


async def _next_or_exhausted(iterator: AsyncIterator[TaskUpdate]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


@dataclass
class TaskExecutionContext:
    """Per-task concurrency state, shared by every call touching one task id.

    ``fold_lock`` is held for each load-transition-save step. ``run_lock``
    is held for the whole of one send, stream or resubscribe run; the busy
    policy applies to it. ``cancel_event`` is set once the task has been
    canceled so an in-flight run can stop waiting on the executor.
    """

    task_id: str
    refs: int = 0
    _fold_lock: Optional[asyncio.Lock] = field(default=None, init=False, repr=False)
    _run_lock: Optional[asyncio.Lock] = field(default=None, init=False, repr=False)
    _cancel_event: Optional[asyncio.Event] = field(default=None, init=False, repr=False)

    @property
    def fold_lock(self) -> asyncio.Lock:
        if self._fold_lock is None:
            self._fold_lock = asyncio.Lock()
        return self._fold_lock

    @property
    def run_lock(self) -> asyncio.Lock:
        if self._run_lock is None:
            self._run_lock = asyncio.Lock()
        return self._run_lock

    @property
    def cancel_event(self) -> asyncio.Event:
        if self._cancel_event is None:
            self._cancel_event = asyncio.Event()
        return self._cancel_event


class TaskManager:
    """
    Routes A2A calls through the task store, the agent executor and the
    lifecycle engine.

    Calls on different tasks run fully in parallel. Calls on the same task
    are serialised: a second run on a busy task is rejected with
    ``TaskBusy`` or queued for up to ``busy_timeout`` seconds, depending on
    ``busy_policy``.
    """

    def __init__(
        self,
        store: TaskStore,
        executor: AgentExecutor,
        streaming_manager: Optional[StreamingManager] = None,
        push_notification_manager: Optional[PushNotificationManager] = None,
        *,
        busy_policy: str = "reject",
        busy_timeout: float = 30.0,
        streaming_enabled: bool = True,
    ):
        if busy_policy not in ("reject", "queue"):
            raise ValueError(f"Unknown busy policy '{busy_policy}'")
        self.store = store
        self.executor = executor
        self.streaming_manager = streaming_manager or StreamingManager()
        self.push_notification_manager = push_notification_manager
        self.busy_policy = busy_policy
        self.busy_timeout = busy_timeout
        self.streaming_enabled = streaming_enabled
        self._contexts: Dict[str, TaskExecutionContext] = {}
        self._background: Set["asyncio.Task[Any]"] = set()

    # ----- execution contexts -----

    def _retain(self, task_id: str) -> TaskExecutionContext:
        context = self._contexts.get(task_id)
        if context is None:
            context = TaskExecutionContext(task_id=task_id)
            self._contexts[task_id] = context
        context.refs += 1
        return context

    def _release(self, context: TaskExecutionContext) -> None:
        context.refs -= 1
        if context.refs <= 0 and self._contexts.get(context.task_id) is context:
            del self._contexts[context.task_id]

    async def _begin_run(self, task_id: str) -> TaskExecutionContext:
        context = self._retain(task_id)
        try:
            if self.busy_policy == "queue":
                try:
                    await asyncio.wait_for(context.run_lock.acquire(), self.busy_timeout)
                except asyncio.TimeoutError:
                    raise TaskBusy(
                        f"Task {task_id} stayed busy for {self.busy_timeout}s",
                        task_id=task_id,
                    ) from None
            else:
                if context.run_lock.locked():
                    raise TaskBusy(
                        f"Task {task_id} is already being processed", task_id=task_id
                    )
                await context.run_lock.acquire()
        except BaseException:
            self._release(context)
            raise
        return context

    def _end_run(self, context: TaskExecutionContext) -> None:
        context.run_lock.release()
        self._release(context)

    @asynccontextmanager
    async def _run(self, task_id: str) -> AsyncIterator[TaskExecutionContext]:
        context = await self._begin_run(task_id)
        try:
            with task_log_context(task_id):
                yield context
        finally:
            self._end_run(context)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        background = asyncio.ensure_future(coro)
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    # ----- helpers -----

    async def _load(self, task_id: str) -> Task:
        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found", task_id=task_id)
        return task

    def _notify(self, task: Task, event: Optional[TaskEvent] = None) -> None:
        if self.push_notification_manager is None:
            return
        if event is None:
            event = status_event(task, final=is_terminal(task.status.state))
        self.push_notification_manager.notify(task.id, event)

    @staticmethod
    def _with_history(task: Task, history_length: Optional[int]) -> Task:
        if history_length is None:
            return task
        if history_length < 0:
            raise InvalidParams("historyLength must not be negative", task_id=task.id)
        trimmed = task.history[-history_length:] if history_length else []
        return task.model_copy(update={"history": trimmed})

    @staticmethod
    def _history_length(params: MessageSendParams) -> Optional[int]:
        if params.configuration is None:
            return None
        history_length = params.configuration.historyLength
        if history_length is not None and history_length < 0:
            raise InvalidParams(
                "historyLength must not be negative", task_id=params.message.taskId
            )
        return history_length

    async def _prepare(
        self, context: TaskExecutionContext, params: MessageSendParams, task: Optional[Task]
    ) -> Tuple[Task, bool]:
        """Persist the incoming message: create a task, or resume an existing one.

        Returns the task the executor should see and whether it was created.
        """
        message = params.message
        async with context.fold_lock:
            current = None if task is not None else await self.store.get(context.task_id)
            if task is None and current is None:
                # First call naming a client-chosen id creates the task
                task = new_task(message, task_id=context.task_id, metadata=params.metadata)
            if current is not None:
                if message.contextId and message.contextId != current.contextId:
                    raise InvalidParams(
                        f"contextId {message.contextId} does not match task {current.id}",
                        task_id=current.id,
                        detail={
                            "taskId": current.id,
                            "contextId": current.contextId,
                            "requestedContextId": message.contextId,
                        },
                    )
                prepared = resume_task(current, message)
                created = False
            else:
                prepared = task
                created = True
            await self.store.save(prepared)

        if created:
            logger.info(
                "Created A2A task",
                extra={"task_id": prepared.id, "context_id": prepared.contextId},
            )
            await self._register_push_config(prepared.id, params)
        else:
            logger.info(
                "Resumed A2A task",
                extra={"task_id": prepared.id, "context_id": prepared.contextId},
            )
        self._notify(prepared)
        return prepared, created

    async def _register_push_config(self, task_id: str, params: MessageSendParams) -> None:
        config = params.configuration.pushNotificationConfig if params.configuration else None
        if config is None:
            return
        if self.push_notification_manager is None or not self.push_notification_manager.enabled:
            logger.warning(
                "Ignoring push notification config, push notifications are disabled",
                extra={"task_id": task_id},
            )
            return
        await self.push_notification_manager.set_config(task_id, config)

    def _new_task_for(self, params: MessageSendParams) -> Task:
        return new_task(params.message, metadata=params.metadata)

    # ----- message/send -----

    async def send_message(self, params: MessageSendParams) -> Union[Task, Message]:
        """Run one non-streaming exchange and return the resulting task or message."""
        history_length = self._history_length(params)
        task_id = params.message.taskId
        fresh = None if task_id else self._new_task_for(params)

        async with self._run(task_id or fresh.id) as context:
            task, created = await self._prepare(context, params, fresh)

            failure: Optional[ExecutorFailure] = None
            result: Union[Message, TaskUpdate, None] = None
            try:
                result = await self.executor.send_message(params, task)
            except Exception as exc:
                logger.exception(
                    "Agent executor failed",
                    extra={"task_id": task.id, "executor": self.executor.name},
                )
                failure = ExecutorFailure.from_exception(exc, task_id=task.id)

            async with context.fold_lock:
                current = await self._load(task.id)
                if is_terminal(current.status.state):
                    logger.info(
                        "Discarding executor result for finished task",
                        extra={"task_id": task.id, "state": current.status.state.value},
                    )
                    return self._with_history(current, history_length)

                if failure is not None:
                    updated = fail_task(current, failure.message)
                elif isinstance(result, Message):
                    if created:
                        await self.store.delete(task.id)
                        if self.push_notification_manager is not None:
                            await self.push_notification_manager.delete_task_configs(task.id)
                        logger.info(
                            "Executor answered with a message, task discarded",
                            extra={"task_id": task.id},
                        )
                        return result
                    updated = self._fold_or_fail(
                        current, TaskUpdate(TaskState.COMPLETED, message=result)
                    )
                elif isinstance(result, TaskUpdate):
                    updated = self._fold_or_fail(current, result)
                else:
                    updated = fail_task(
                        current,
                        f"Agent returned an unsupported result type: {type(result).__name__}",
                    )
                await self.store.save(updated)

        logger.info(
            "A2A task updated",
            extra={"task_id": updated.id, "state": updated.status.state.value},
        )
        self._notify(updated)
        return self._with_history(updated, history_length)

    @staticmethod
    def _fold_or_fail(task: Task, update: TaskUpdate) -> Task:
        try:
            return apply_update(task, update)
        except InvalidStateTransition as exc:
            logger.warning(
                "Agent reported an invalid update",
                extra={"task_id": task.id, "error": exc.message},
            )
            return fail_task(task, f"Agent reported an invalid update: {exc.message}")

    # ----- message/stream -----

    async def stream_message(self, params: MessageSendParams) -> StreamingChannel:
        """Start a streamed exchange and return the caller's channel.

        Errors resolving the task are raised here; anything that goes wrong
        once the stream is running is delivered through the channel.
        """
        self._require_streaming()
        if not self.executor.supports_streaming:
            raise UnsupportedOperation(f"{self.executor.name} does not support streaming")
        self._history_length(params)

        task_id = params.message.taskId
        fresh = None if task_id else self._new_task_for(params)
        context = await self._begin_run(task_id or fresh.id)
        try:
            task, _ = await self._prepare(context, params, fresh)
            stream = await self.streaming_manager.open_stream(task.id)
        except BaseException:
            self._end_run(context)
            raise

        channel = stream.attach()
        self._spawn(
            self._produce(context, stream, lambda: self.executor.stream_message(params, task))
        )
        return channel

    async def _produce(
        self,
        context: TaskExecutionContext,
        stream: TaskEventStream,
        open_updates: Callable[[], AsyncIterator[TaskUpdate]],
    ) -> None:
        error: Optional[Exception] = None
        try:
            with task_log_context(stream.task_id):
                await self._drive(context, stream, open_updates)
        except asyncio.CancelledError:
            error = A2ARuntimeError("Stream interrupted by server shutdown", task_id=stream.task_id)
            raise
        except Exception as exc:
            logger.exception("Stream producer failed", extra={"task_id": stream.task_id})
            error = exc
        finally:
            await self.streaming_manager.finish(stream, error)
            self._end_run(context)

    async def _drive(
        self,
        context: TaskExecutionContext,
        stream: TaskEventStream,
        open_updates: Callable[[], AsyncIterator[TaskUpdate]],
    ) -> None:
        """Fold the executor's updates in order, publishing each one after it is saved.

        The event for an update is held back until the next update arrives
        so the last event of the run can be flagged final. Updates that end
        the stream are published as final straight away.
        """
        task_id = stream.task_id
        try:
            iterator = open_updates().__aiter__()
        except Exception as exc:
            await self._publish_failure(context, stream, None, exc)
            return

        pending: Optional[PendingEvent] = None
        handed_off = False
        try:
            while True:
                try:
                    update = await self._await_update(context, iterator)
                except asyncio.CancelledError:
                    handed_off = True
                    raise
                except Exception as exc:
                    await self._publish_failure(context, stream, pending, exc)
                    return

                if update is _CANCELED:
                    handed_off = True
                    break
                if update is _EXHAUSTED or update is _HALTED:
                    break

                folded = await self._fold(context, task_id, update)
                if folded is None:
                    break

                await self._flush(stream, pending)
                task, event = folded
                if ends_stream(task.status.state):
                    await stream.publish(mark_final(event), task, final=True)
                    return
                pending = folded

            await self._finish_sequence(context, stream, pending)
        finally:
            if not handed_off:
                aclose = getattr(iterator, "aclose", None)
                if aclose is not None:
                    await aclose()

    async def _await_update(
        self, context: TaskExecutionContext, iterator: AsyncIterator[TaskUpdate]
    ) -> Any:
        """Wait for the next update, or for the task to be canceled first."""
        if context.cancel_event.is_set():
            return _HALTED

        next_update = asyncio.ensure_future(_next_or_exhausted(iterator))
        canceled = asyncio.ensure_future(context.cancel_event.wait())
        try:
            await asyncio.wait({next_update, canceled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            next_update.cancel()
            raise
        finally:
            canceled.cancel()

        if next_update.done():
            return next_update.result()

        self._spawn(self._discard_remaining(context.task_id, iterator, next_update))
        return _CANCELED

    async def _discard_remaining(
        self,
        task_id: str,
        iterator: AsyncIterator[TaskUpdate],
        in_flight: "asyncio.Future[Any]",
    ) -> None:
        """Consume and drop whatever a canceled executor still produces."""
        discarded = 0
        try:
            item = await in_flight
            while item is not _EXHAUSTED:
                discarded += 1
                item = await _next_or_exhausted(iterator)
        except Exception as exc:
            logger.warning(
                "Agent executor raised after cancellation",
                extra={"task_id": task_id, "error": str(exc)},
            )
        logger.info(
            "Discarded executor updates after cancellation",
            extra={"task_id": task_id, "discarded": discarded},
        )

    async def _fold(
        self, context: TaskExecutionContext, task_id: str, update: TaskUpdate
    ) -> Optional[PendingEvent]:
        async with context.fold_lock:
            current = await self._load(task_id)
            if is_terminal(current.status.state):
                logger.info(
                    "Discarding update for finished task",
                    extra={"task_id": task_id, "state": current.status.state.value},
                )
                return None
            updated = self._fold_or_fail(current, update)
            await self.store.save(updated)

        if updated.status.state is TaskState.FAILED and update.state is not TaskState.FAILED:
            event: TaskEvent = status_event(updated, final=False)
        else:
            event = build_event(updated, update, final=False)
        self._notify(updated, event)
        return updated, event

    async def _flush(self, stream: TaskEventStream, pending: Optional[PendingEvent]) -> None:
        if pending is not None:
            task, event = pending
            await stream.publish(event, task)

    async def _finish_sequence(
        self,
        context: TaskExecutionContext,
        stream: TaskEventStream,
        pending: Optional[PendingEvent],
    ) -> None:
        async with context.fold_lock:
            current = await self._load(stream.task_id)

        if current.status.state is TaskState.CANCELED:
            await self._flush(stream, pending)
            await stream.publish(status_event(current, final=True), current, final=True)
        elif pending is not None:
            task, event = pending
            await stream.publish(mark_final(event), task, final=True)
        else:
            await stream.publish(status_event(current, final=True), current, final=True)

    async def _publish_failure(
        self,
        context: TaskExecutionContext,
        stream: TaskEventStream,
        pending: Optional[PendingEvent],
        exc: Exception,
    ) -> None:
        """Fold an executor exception into ``failed`` and publish it as the final event."""
        logger.error(
            "Agent executor failed during streaming",
            extra={"task_id": stream.task_id, "executor": self.executor.name},
            exc_info=exc,
        )
        await self._flush(stream, pending)
        async with context.fold_lock:
            current = await self._load(stream.task_id)
            if is_terminal(current.status.state):
                updated = current
            else:
                failure = ExecutorFailure.from_exception(exc, task_id=stream.task_id)
                updated = fail_task(current, failure.message)
                await self.store.save(updated)

        event = status_event(updated, final=True)
        if updated is not current:
            self._notify(updated, event)
        await stream.publish(event, updated, final=True)

    # ----- tasks/cancel -----

    async def cancel_task(self, params: TaskIdParams) -> Task:
        """Mark a task canceled and ask the executor to stop working on it."""
        task_id = params.id
        context = self._retain(task_id)
        try:
            async with context.fold_lock:
                task = await self._load(task_id)
                canceled = mark_canceled(task)
                await self.store.save(canceled)
            context.cancel_event.set()
        finally:
            self._release(context)

        logger.info("Canceled A2A task", extra={"task_id": task_id})
        self._notify(canceled)

        try:
            await self.executor.cancel(task_id)
        except UnsupportedOperation:
            logger.info(
                "Executor does not support cancellation; task marked canceled only",
                extra={"task_id": task_id, "executor": self.executor.name},
            )
        except Exception:
            logger.exception(
                "Executor failed to cancel task",
                extra={"task_id": task_id, "executor": self.executor.name},
            )
        return canceled

    # ----- tasks/resubscribe -----

    async def resubscribe(self, params: TaskIdParams) -> StreamingChannel:
        """Re-attach a caller to a task's event sequence."""
        self._require_streaming()
        task = await self._load(params.id)

        channel = await self.streaming_manager.attach(task.id)
        if channel is not None:
            return channel

        if ends_stream(task.status.state):
            return await self._snapshot_channel(task)

        context = await self._begin_run(task.id)
        try:
            # State may have moved on while waiting for the run lock.
            task = await self._load(task.id)
            if not ends_stream(task.status.state):
                updates = self.executor.resubscribe(task)
                stream = await self.streaming_manager.open_stream(task.id)
        except BaseException:
            self._end_run(context)
            raise

        if ends_stream(task.status.state):
            self._end_run(context)
            return await self._snapshot_channel(task)

        channel = stream.attach()
        self._spawn(self._produce(context, stream, lambda: updates))
        logger.info("Resubscribed through executor", extra={"task_id": task.id})
        return channel

    async def _snapshot_channel(self, task: Task) -> StreamingChannel:
        channel = StreamingChannel(task.id, maxsize=2)
        await channel.send(status_event(task, final=True))
        await channel.close()
        return channel

    def _require_streaming(self) -> None:
        if not self.streaming_enabled:
            raise UnsupportedOperation("Streaming is disabled on this server")

    # ----- queries -----

    async def get_task(self, params: TaskQueryParams) -> Task:
        task = await self._load(params.id)
        return self._with_history(task, params.historyLength)

    async def list_tasks(self, params: ListTasksParams) -> ListTasksResult:
        """List tasks with optional context/state filtering and offset pagination."""
        page_size = params.pageSize or DEFAULT_PAGE_SIZE
        if not 0 < page_size <= MAX_PAGE_SIZE:
            raise InvalidParams(f"pageSize must be between 1 and {MAX_PAGE_SIZE}")

        try:
            offset = int(params.pageToken) if params.pageToken else 0
        except ValueError:
            raise InvalidParams(f"Invalid pageToken '{params.pageToken}'") from None
        if offset < 0:
            raise InvalidParams(f"Invalid pageToken '{params.pageToken}'")

        tasks = await self.store.list_tasks(context_id=params.contextId, state=params.status)
        if params.metadata:
            tasks = [
                task
                for task in tasks
                if all((task.metadata or {}).get(k) == v for k, v in params.metadata.items())
            ]

        page = tasks[offset : offset + page_size]
        next_offset = offset + page_size
        results = []
        for task in page:
            task = self._with_history(task, params.historyLength)
            if not params.includeArtifacts:
                task = task.model_copy(update={"artifacts": []})
            results.append(task)

        return ListTasksResult(
            tasks=results,
            totalSize=len(tasks),
            pageSize=page_size,
            nextPageToken=str(next_offset) if next_offset < len(tasks) else "",
        )

    # ----- push notification configs -----

    def _require_push(self) -> PushNotificationManager:
        if self.push_notification_manager is None or not self.push_notification_manager.enabled:
            raise UnsupportedOperation("Push notifications are not enabled on this server")
        return self.push_notification_manager

    async def set_push_notification_config(
        self, params: TaskPushNotificationConfig
    ) -> TaskPushNotificationConfig:
        push = self._require_push()
        await self._load(params.taskId)
        return await push.set_config(params.taskId, params.pushNotificationConfig)

    async def get_push_notification_config(
        self, params: GetTaskPushNotificationConfigParams
    ) -> TaskPushNotificationConfig:
        push = self._require_push()
        await self._load(params.id)
        config = await push.get_config(params.id, params.pushNotificationConfigId)
        if config is None:
            raise InvalidParams(
                "Push notification config not found",
                task_id=params.id,
                detail={"taskId": params.id, "pushNotificationConfigId": params.pushNotificationConfigId},
            )
        return config

    async def list_push_notification_configs(
        self, params: TaskIdParams
    ) -> List[TaskPushNotificationConfig]:
        push = self._require_push()
        await self._load(params.id)
        return await push.list_configs(params.id)

    async def delete_push_notification_config(
        self, params: DeleteTaskPushNotificationConfigParams
    ) -> None:
        push = self._require_push()
        await self._load(params.id)
        if not await push.delete_config(params.id, params.pushNotificationConfigId):
            raise InvalidParams(
                "Push notification config not found",
                task_id=params.id,
                detail={"taskId": params.id, "pushNotificationConfigId": params.pushNotificationConfigId},
            )

    async def wait_for_notifications(self) -> None:
        """Wait for push deliveries scheduled so far."""
        if self.push_notification_manager is not None:
            await self.push_notification_manager.wait_for_notifications()

    # ----- lifecycle -----

    async def wait_for_background(self) -> None:
        """Wait until every background producer has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def get_stats(self) -> Dict[str, int]:
        return {
            "active_tasks": len(self._contexts),
            "background_jobs": len(self._background),
        }

    async def close(self) -> None:
        """Stop background producers."""
        for background in list(self._background):
            background.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        self._background.clear()
