"""
A2A Runtime Main Application

A2A protocol server using JSON-RPC 2.0 over HTTP, with server-sent events
for streamed calls.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .a2a import __version__
from .a2a.agent_card import AgentCardGenerator
from .a2a.models import (
    AgentCard,
    DeleteTaskPushNotificationConfigParams,
    GetTaskPushNotificationConfigParams,
    ListTasksParams,
    MessageSendParams,
    TaskIdParams,
    TaskPushNotificationConfig,
    TaskQueryParams,
)
from .a2a.server import JSONRPCServer, RPCStream, serialize_a2a
from .database import SqliteTaskStore
from .error_profiles import contract_for_exception
from .exceptions import (
    A2ARuntimeError,
    InvalidParams,
    InvalidStateTransition,
    TaskBusy,
    TaskNotFound,
    UnsupportedOperation,
    UntrustedAgentCard,
    UpstreamUnavailable,
)
from .executor import AgentExecutor
from .logging_config import configure_logging
from .push_notification_manager import PushNotificationManager
from .sample_executors import create_executor
from .settings import Settings, get_settings
from .streaming_manager import StreamingChannel, StreamingManager
from .task_manager import TaskManager
from .task_store import InMemoryTaskStore, TaskStore

logger = logging.getLogger(__name__)

Authenticator = Callable[[Request], Awaitable[None]]

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Cache-Control",
}

# HTTP status used when a runtime error reaches one of the plain REST routes
HTTP_STATUS_FOR_ERROR = {
    InvalidParams: status.HTTP_400_BAD_REQUEST,
    TaskNotFound: status.HTTP_404_NOT_FOUND,
    InvalidStateTransition: status.HTTP_409_CONFLICT,
    TaskBusy: status.HTTP_409_CONFLICT,
    UnsupportedOperation: status.HTTP_501_NOT_IMPLEMENTED,
    UpstreamUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    UntrustedAgentCard: status.HTTP_502_BAD_GATEWAY,
}


def format_sse(data: Any, event: Optional[str] = None) -> str:
    """Serialize data as a server-sent event."""
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data)}\n\n"


def bearer_authenticator(token: Optional[str]) -> Authenticator:
    """Build an authenticator enforcing ``Authorization: Bearer <token>``.

    When no token is configured every request is allowed (development mode).
    """

    async def authenticate(request: Request) -> None:
        if not token:
            return
        authorization = request.headers.get("authorization")
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
        provided = authorization.split(" ", 1)[1]
        if provided != token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid bearer token")

    return authenticate


async def require_authorization(request: Request) -> None:
    """FastAPI dependency delegating to the app's configured authenticator."""
    await request.app.state.authenticator(request)


def create_task_store(settings: Settings) -> TaskStore:
    """Build the task store selected by ``A2A_TASK_STORE``."""
    if settings.task_store == "sqlite":
        return SqliteTaskStore(settings.database_path)
    return InMemoryTaskStore()


def get_task_manager(request: Request) -> TaskManager:
    return request.app.state.task_manager


def get_task_store(request: Request) -> TaskStore:
    return request.app.state.task_store


def get_streaming_manager(request: Request) -> StreamingManager:
    return request.app.state.streaming_manager


def get_rpc_server(request: Request) -> JSONRPCServer:
    return request.app.state.rpc_server


def get_agent_card(request: Request) -> AgentCard:
    return request.app.state.agent_card


def register_a2a_methods(server: JSONRPCServer, task_manager: TaskManager, agent_card: AgentCard) -> None:
    """Wire the A2A JSON-RPC methods to the task manager."""

    async def handle_message_send(params: Dict[str, Any]) -> Any:
        return await task_manager.send_message(MessageSendParams.model_validate(params))

    async def handle_message_stream(params: Dict[str, Any]) -> StreamingChannel:
        return await task_manager.stream_message(MessageSendParams.model_validate(params))

    async def handle_tasks_get(params: Dict[str, Any]) -> Any:
        return await task_manager.get_task(TaskQueryParams.model_validate(params))

    async def handle_tasks_list(params: Dict[str, Any]) -> Any:
        return await task_manager.list_tasks(ListTasksParams.model_validate(params))

    async def handle_tasks_cancel(params: Dict[str, Any]) -> Any:
        return await task_manager.cancel_task(TaskIdParams.model_validate(params))

    async def handle_tasks_resubscribe(params: Dict[str, Any]) -> StreamingChannel:
        return await task_manager.resubscribe(TaskIdParams.model_validate(params))

    async def handle_push_config_set(params: Dict[str, Any]) -> Any:
        return await task_manager.set_push_notification_config(
            TaskPushNotificationConfig.model_validate(params)
        )

    async def handle_push_config_get(params: Dict[str, Any]) -> Any:
        return await task_manager.get_push_notification_config(
            GetTaskPushNotificationConfigParams.model_validate(params)
        )

    async def handle_push_config_list(params: Dict[str, Any]) -> Any:
        return await task_manager.list_push_notification_configs(TaskIdParams.model_validate(params))

    async def handle_push_config_delete(params: Dict[str, Any]) -> Any:
        return await task_manager.delete_push_notification_config(
            DeleteTaskPushNotificationConfigParams.model_validate(params)
        )

    async def handle_get_agent_card(params: Dict[str, Any]) -> AgentCard:
        return agent_card

    # Message operations
    server.register_method("message/send", handle_message_send)
    server.register_method("message/stream", handle_message_stream, streaming=True)

    # Task management
    server.register_method("tasks/get", handle_tasks_get)
    server.register_method("tasks/list", handle_tasks_list)
    server.register_method("tasks/cancel", handle_tasks_cancel)
    server.register_method("tasks/resubscribe", handle_tasks_resubscribe, streaming=True)

    # Push notification configuration
    server.register_method("tasks/pushNotificationConfig/set", handle_push_config_set)
    server.register_method("tasks/pushNotificationConfig/get", handle_push_config_get)
    server.register_method("tasks/pushNotificationConfig/list", handle_push_config_list)
    server.register_method("tasks/pushNotificationConfig/delete", handle_push_config_delete)

    # Agent information
    server.register_method("agent/getAuthenticatedExtendedCard", handle_get_agent_card)


def create_app(
    settings: Optional[Settings] = None,
    executor: Optional[AgentExecutor] = None,
    store: Optional[TaskStore] = None,
    authenticator: Optional[Authenticator] = None,
) -> FastAPI:
    """
    Create the A2A runtime FastAPI application.

    Args:
        settings: Configuration; read from the environment when omitted
        executor: Agent executor; built from ``settings.executor`` when omitted
        store: Task store; built from ``settings.task_store`` when omitted
        authenticator: Request authenticator; bearer-token check by default

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        configure_logging(settings.log_level, settings.log_file)

        # Initialize components
        app.state.executor = executor or create_executor(settings.executor)
        app.state.task_store = store or create_task_store(settings)
        app.state.streaming_manager = StreamingManager(settings.stream_queue_size)
        app.state.push_notification_manager = PushNotificationManager(settings.push_notifications)
        app.state.task_manager = TaskManager(
            app.state.task_store,
            app.state.executor,
            app.state.streaming_manager,
            app.state.push_notification_manager,
            busy_policy=settings.busy_policy,
            busy_timeout=settings.busy_timeout,
            streaming_enabled=settings.streaming_enabled,
        )
        app.state.agent_card = AgentCardGenerator(settings, app.state.executor).generate_agent_card()
        app.state.rpc_server = JSONRPCServer(settings.error_profile)
        register_a2a_methods(app.state.rpc_server, app.state.task_manager, app.state.agent_card)

        logger.info(
            "A2A runtime started",
            extra={
                "executor": app.state.executor.name,
                "task_store": type(app.state.task_store).__name__,
                "busy_policy": settings.busy_policy,
            },
        )

        yield

        # Cleanup
        await app.state.task_manager.close()
        await app.state.streaming_manager.close()
        await app.state.push_notification_manager.close()
        await app.state.task_store.close()
        logger.info("A2A runtime stopped")

    app = FastAPI(
        title="A2A Runtime",
        description="A2A task execution and streaming server",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.authenticator = authenticator or bearer_authenticator(settings.auth_token)

    # Add CORS middleware for web clients
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(A2ARuntimeError)
    async def handle_runtime_error(request: Request, exc: A2ARuntimeError) -> JSONResponse:
        contract = contract_for_exception(exc, settings.error_profile)
        status_code = HTTP_STATUS_FOR_ERROR.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
        return JSONResponse(
            status_code=status_code,
            content={"error": serialize_a2a(contract.to_jsonrpc_error())},
        )

    # Simple ping endpoint for health checks
    @app.get("/ping")
    async def ping() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/health", dependencies=[Depends(require_authorization)])
    async def health_check(request: Request) -> Dict[str, Any]:
        """Health check covering the task store and streaming state."""
        health_info: Dict[str, Any] = {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {
                "task_store": "unknown",
                "streaming": get_streaming_manager(request).get_connection_stats(),
                "tasks": get_task_manager(request).get_stats(),
                "push_notifications": "enabled" if settings.push_notifications.enabled else "disabled",
            },
            "version": __version__,
        }

        try:
            await get_task_store(request).get("__health_check__")
            health_info["services"]["task_store"] = "healthy"
        except A2ARuntimeError as e:
            health_info["services"]["task_store"] = "unhealthy"
            health_info["status"] = "degraded"
            logger.error("Task store health check failed", extra={"error": str(e)})

        return health_info

    # Well-known Agent Card discovery endpoint (publicly accessible)
    @app.get("/.well-known/agent-card.json")
    async def get_agent_card_well_known(request: Request) -> Any:
        """Agent Card discovery endpoint.

        Served without authentication; clients must treat its contents as
        an unverified hint.
        """
        return serialize_a2a(get_agent_card(request))

    @app.post("/a2a/rpc", dependencies=[Depends(require_authorization)])
    async def a2a_jsonrpc(request: Request) -> Response:
        """Handle A2A JSON-RPC 2.0 requests."""
        rpc_server = get_rpc_server(request)

        body_bytes = await request.body()
        if not body_bytes:
            # Return method listing for empty requests
            return JSONResponse(
                {
                    "jsonrpc": "2.0",
                    "id": None,
                    "result": {
                        "message": "A2A runtime JSON-RPC endpoint ready",
                        "supported_methods": rpc_server.supported_methods,
                        "streaming_methods": sorted(rpc_server.streaming_methods),
                    },
                }
            )

        try:
            payload = json.loads(body_bytes)
        except ValueError as e:
            return JSONResponse(rpc_server.parse_error_response(str(e)))

        result = await rpc_server.handle_payload(payload)
        if result is None:
            # Notifications get no response
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        if isinstance(result, RPCStream):
            return StreamingResponse(
                _rpc_sse(result), media_type="text/event-stream", headers=SSE_HEADERS
            )
        return JSONResponse(result)

    @app.post("/a2a/message/send", dependencies=[Depends(require_authorization)])
    async def a2a_message_send(
        params: MessageSendParams,
        task_manager: TaskManager = Depends(get_task_manager),
    ) -> Any:
        """Send an A2A message and return the resulting task or message."""
        result = await task_manager.send_message(params)
        return serialize_a2a(result)

    @app.post("/a2a/message/stream", dependencies=[Depends(require_authorization)])
    async def a2a_message_stream(
        params: MessageSendParams,
        task_manager: TaskManager = Depends(get_task_manager),
    ) -> StreamingResponse:
        """Stream an A2A message exchange using Server-Sent Events."""
        channel = await task_manager.stream_message(params)
        return StreamingResponse(
            _event_sse(channel, settings), media_type="text/event-stream", headers=SSE_HEADERS
        )

    logger.info("A2A runtime application created")
    return app


async def _rpc_sse(stream: RPCStream) -> AsyncIterator[str]:
    """Format JSON-RPC envelopes as server-sent events."""
    try:
        async for payload in stream.payloads:
            yield format_sse(payload)
    finally:
        logger.debug("JSON-RPC streaming response completed", extra={"request_id": stream.request_id})


async def _event_sse(channel: StreamingChannel, settings: Settings) -> AsyncIterator[str]:
    """Format bare task events as named server-sent events."""
    async for item in channel:
        if isinstance(item, A2ARuntimeError):
            contract = contract_for_exception(item, settings.error_profile)
            yield format_sse(serialize_a2a(contract.to_jsonrpc_error()), event="error")
        elif isinstance(item, Exception):
            logger.error("Streaming failed", extra={"task_id": channel.task_id, "error": str(item)})
            yield format_sse({"code": -32603, "message": "Internal server error"}, event="error")
        else:
            yield format_sse(serialize_a2a(item), event=item.kind)


# Convenience function for running the server
def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the A2A runtime server with uvicorn."""
    import uvicorn

    settings = get_settings()
    app = create_app(settings)
    uvicorn.run(
        app,
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )
