"""
A2A (Agent-to-Agent) Protocol Data Models

Pydantic models for the A2A task execution and streaming protocol. Field
names follow the camelCase wire format so that models can be dumped straight
into JSON-RPC payloads.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field


# ===== FOUNDATIONAL TYPES =====

class TransportProtocol(str, Enum):
    JSONRPC = "JSONRPC"
    GRPC = "GRPC"
    HTTP_JSON = "HTTP+JSON"


class TaskState(str, Enum):
    """Task lifecycle states; ``completed``, ``failed`` and ``canceled`` are terminal."""
    SUBMITTED = "submitted"
    WORKING = "working"
    INPUT_REQUIRED = "input_required"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


# ===== CONTENT PARTS =====

class PartBase(BaseModel):
    metadata: Optional[Dict[str, Any]] = None


class TextPart(PartBase):
    kind: Literal["text"] = "text"
    text: str


class FileBase(BaseModel):
    name: Optional[str] = None
    mimeType: Optional[str] = None


class FileWithBytes(FileBase):
    """File content inlined as base64."""
    bytes: str


class FileWithUri(FileBase):
    uri: str


class FilePart(PartBase):
    kind: Literal["file"] = "file"
    file: Union[FileWithBytes, FileWithUri]


class DataPart(PartBase):
    """Arbitrary JSON object content."""
    kind: Literal["data"] = "data"
    data: Dict[str, Any]


# Simple union; each part type is told apart by its required field
Part = Union[TextPart, FilePart, DataPart]


# ===== MESSAGES, ARTIFACTS AND TASKS =====

class Message(BaseModel):
    """One conversational turn from the user or the agent."""
    role: Literal["user", "agent"]
    parts: List[Part]
    messageId: str
    taskId: Optional[str] = None
    contextId: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    referenceTaskIds: Optional[List[str]] = None
    final: Optional[bool] = None  # last fragment of one streamed reply
    kind: Literal["message"] = "message"


class Artifact(BaseModel):
    """Output produced by the agent, made of parts; may be streamed in chunks."""
    artifactId: str
    name: Optional[str] = None
    description: Optional[str] = None
    parts: List[Part]
    metadata: Optional[Dict[str, Any]] = None
    lastChunk: Optional[bool] = None


class TaskStatus(BaseModel):
    """Current state plus the agent message that came with it."""
    state: TaskState
    message: Optional[Message] = None
    timestamp: Optional[str] = None


class Task(BaseModel):
    """Unit of work tracked through the lifecycle; identified by ``id``, grouped by ``contextId``."""
    id: str
    contextId: str
    status: TaskStatus
    history: List[Message] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    kind: Literal["task"] = "task"


# ===== EVENT TYPES =====

class TaskStatusUpdateEvent(BaseModel):
    """Streamed when a task's status changes; ``final`` marks the last event of a stream."""
    taskId: str
    contextId: str
    kind: Literal["status-update"] = "status-update"
    status: TaskStatus
    final: bool
    metadata: Optional[Dict[str, Any]] = None


class TaskArtifactUpdateEvent(BaseModel):
    """Streamed when an artifact is added to, or extended on, a task."""
    taskId: str
    contextId: str
    kind: Literal["artifact-update"] = "artifact-update"
    artifact: Artifact
    append: Optional[bool] = None
    lastChunk: bool
    metadata: Optional[Dict[str, Any]] = None


TaskEvent = Union[TaskStatusUpdateEvent, TaskArtifactUpdateEvent]


# ===== SECURITY SCHEMES =====

class SecuritySchemeBase(BaseModel):
    description: Optional[str] = None


class APIKeySecurityScheme(SecuritySchemeBase):
    """API key passed in a query parameter, header or cookie."""
    type: Literal["apiKey"] = "apiKey"
    in_: Literal["query", "header", "cookie"] = Field(alias="in")
    name: str

    model_config = {"populate_by_name": True}


class HTTPAuthSecurityScheme(SecuritySchemeBase):
    """HTTP authentication such as ``bearer`` or ``basic``."""
    type: Literal["http"] = "http"
    scheme: str
    bearerFormat: Optional[str] = None


class MutualTLSSecurityScheme(SecuritySchemeBase):
    type: Literal["mutualTLS"] = "mutualTLS"


SecurityScheme = Union[
    APIKeySecurityScheme,
    HTTPAuthSecurityScheme,
    MutualTLSSecurityScheme,
]


# ===== AGENT CARD =====

class AgentProvider(BaseModel):
    organization: str
    url: str


class AgentCapabilities(BaseModel):
    """Optional protocol features this agent implements."""
    streaming: Optional[bool] = None
    pushNotifications: Optional[bool] = None
    stateTransitionHistory: Optional[bool] = None


class AgentSkill(BaseModel):
    """A capability advertised on the AgentCard."""
    id: str
    name: str
    description: str
    tags: List[str]
    examples: Optional[List[str]] = None
    inputModes: Optional[List[str]] = None
    outputModes: Optional[List[str]] = None


class AgentCardSignature(BaseModel):
    """One detached signature over an AgentCard (JWS-style ``protected`` header plus signature)."""
    protected: str
    signature: str
    header: Optional[Dict[str, Any]] = None


class AgentCard(BaseModel):
    """The AgentCard is a self-describing manifest for an agent.

    Nothing in the card is authenticated by the protocol itself; callers
    that act on ``name``, ``url`` or ``capabilities`` of a remote card should
    pass it through an ``AgentCardVerifier`` first.
    """
    protocolVersion: str = "0.3.0"
    name: str
    description: str
    url: str
    preferredTransport: Optional[Union[TransportProtocol, str]] = None
    provider: Optional[AgentProvider] = None
    version: str
    documentationUrl: Optional[str] = None
    capabilities: AgentCapabilities
    securitySchemes: Optional[Dict[str, SecurityScheme]] = None
    security: Optional[List[Dict[str, List[str]]]] = None
    defaultInputModes: List[str] = ["text/plain"]
    defaultOutputModes: List[str] = ["text/plain"]
    skills: List[AgentSkill]
    supportsAuthenticatedExtendedCard: Optional[bool] = None
    signatures: Optional[List[AgentCardSignature]] = None


# ===== PUSH NOTIFICATIONS =====

class PushNotificationAuthenticationInfo(BaseModel):
    """Credentials presented to a webhook endpoint."""
    schemes: List[str]
    credentials: Optional[str] = None


class PushNotificationConfig(BaseModel):
    """A webhook that receives task events for one task."""
    id: Optional[str] = None
    url: str
    token: Optional[str] = None
    authentication: Optional[PushNotificationAuthenticationInfo] = None


class TaskPushNotificationConfig(BaseModel):
    """Webhook configuration bound to the task it reports on."""
    taskId: str
    pushNotificationConfig: PushNotificationConfig


# ===== JSON-RPC 2.0 TYPES =====

class JSONRPCMessage(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[Union[int, str]] = None


class JSONRPCRequest(JSONRPCMessage):
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCError(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCSuccessResponse(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[Union[int, str]] = None
    result: Any


class JSONRPCErrorResponse(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[Union[int, str]] = None  # Can be null for error responses
    error: JSONRPCError


# ===== A2A REQUEST/RESPONSE TYPES =====

class MessageSendConfiguration(BaseModel):
    """Per-call options of ``message/send`` and ``message/stream``."""
    acceptedOutputModes: Optional[List[str]] = None
    historyLength: Optional[int] = Field(default=None, ge=0)
    pushNotificationConfig: Optional[PushNotificationConfig] = None
    blocking: Optional[bool] = None


class MessageSendParams(BaseModel):
    """``message/send`` and ``message/stream`` params."""
    message: Message
    configuration: Optional[MessageSendConfiguration] = None
    metadata: Optional[Dict[str, Any]] = None


class TaskIdParams(BaseModel):
    """``tasks/cancel`` and ``tasks/resubscribe`` params."""
    id: str
    metadata: Optional[Dict[str, Any]] = None


class TaskQueryParams(TaskIdParams):
    """``tasks/get`` params."""
    historyLength: Optional[int] = Field(default=None, ge=0)


class GetTaskPushNotificationConfigParams(TaskIdParams):
    """Parameters for fetching one push notification configuration of a task."""
    pushNotificationConfigId: Optional[str] = None


class DeleteTaskPushNotificationConfigParams(TaskIdParams):
    """Parameters for removing one push notification configuration of a task."""
    pushNotificationConfigId: str


class ListTasksParams(BaseModel):
    """``tasks/list`` filters and paging."""
    contextId: Optional[str] = None
    status: Optional[TaskState] = None
    pageSize: Optional[int] = None
    pageToken: Optional[str] = None
    historyLength: Optional[int] = Field(default=None, ge=0)
    includeArtifacts: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None


class ListTasksResult(BaseModel):
    """One page of ``tasks/list``; an empty ``nextPageToken`` means no more pages."""
    tasks: List[Task]
    totalSize: int
    pageSize: int
    nextPageToken: str


# ===== UTILITY FUNCTIONS =====

def generate_id(prefix: str = "") -> str:
    """Random UUID4 string, optionally prefixed."""
    return f"{prefix}{uuid4()}" if prefix else str(uuid4())


def create_task_id() -> str:
    return generate_id("task_")


def create_context_id() -> str:
    return generate_id("ctx_")


def create_message_id() -> str:
    return generate_id("msg_")


def create_artifact_id() -> str:
    return generate_id("art_")


def current_timestamp() -> str:
    """Return an ISO-8601 UTC timestamp, as the A2A protocol requires."""
    return datetime.now(timezone.utc).isoformat()


def agent_text_message(text: str, *, final: Optional[bool] = None) -> Message:
    """Build an agent-authored message holding a single text part."""
    return Message(
        role="agent",
        parts=[TextPart(text=text)],
        messageId=create_message_id(),
        final=final,
    )


def message_text(message: Optional[Message]) -> str:
    """Concatenate the text parts of a message."""
    if message is None:
        return ""
    return "".join(part.text for part in message.parts if isinstance(part, TextPart))
