import pytest
from pydantic import ValidationError

from a2a_runtime.a2a.models import (
    DataPart,
    APIKeySecurityScheme,
    FilePart,
    FileWithBytes,
    FileWithUri,
    JSONRPCMessage,
    JSONRPCRequest,
    Message,
    MessageSendConfiguration,
    MessageSendParams,
    MutualTLSSecurityScheme,
    Task,
    TaskQueryParams,
    TaskState,
    TaskStatus,
    TextPart,
    agent_text_message,
    create_task_id,
    message_text,
)


def test_task_state_wire_values():
    assert [state.value for state in TaskState] == [
        "submitted",
        "working",
        "input_required",
        "completed",
        "failed",
        "canceled",
    ]


def test_parts_are_told_apart_on_input():
    message = Message.model_validate(
        {
            "role": "user",
            "messageId": "msg-1",
            "parts": [
                {"kind": "text", "text": "convert"},
                {"kind": "data", "data": {"amount": 100}},
                {"kind": "file", "file": {"uri": "https://files.example/rates.csv"}},
            ],
        }
    )

    assert [type(part) for part in message.parts] == [TextPart, DataPart, FilePart]
    assert message.kind == "message"


def test_message_requires_known_role():
    with pytest.raises(ValidationError):
        Message(role="system", parts=[TextPart(text="x")], messageId="msg-1")


def test_task_defaults_and_dump():
    task = Task(
        id="task-1",
        contextId="ctx-1",
        status=TaskStatus(state=TaskState.WORKING),
    )

    dumped = task.model_dump(mode="json", exclude_none=True)

    assert dumped == {
        "id": "task-1",
        "contextId": "ctx-1",
        "status": {"state": "working"},
        "history": [],
        "artifacts": [],
        "kind": "task",
    }


def test_jsonrpc_request_rejects_other_versions():
    with pytest.raises(ValidationError):
        JSONRPCRequest.model_validate({"jsonrpc": "1.0", "id": 1, "method": "tasks/get"})


def test_message_send_params_configuration():
    params = MessageSendParams.model_validate(
        {
            "message": {"role": "user", "messageId": "m", "parts": [{"kind": "text", "text": "hi"}]},
            "configuration": {"historyLength": 2, "blocking": True},
        }
    )
    assert params.configuration.historyLength == 2
    assert params.configuration.pushNotificationConfig is None


def test_helpers():
    assert create_task_id().startswith("task_")
    assert create_task_id() != create_task_id()

    message = agent_text_message("Hello", final=True)
    assert message.role == "agent"
    assert message.final is True
    assert message_text(message) == "Hello"
    assert message_text(None) == ""

    mixed = Message(
        role="agent",
        parts=[TextPart(text="a"), DataPart(data={}), TextPart(text="b")],
        messageId="m",
    )
    assert message_text(mixed) == "ab"


def test_file_parts_carry_bytes_or_uri():
    inline = FilePart.model_validate(
        {"kind": "file", "file": {"bytes": "aGVsbG8=", "name": "hello.txt", "mimeType": "text/plain"}}
    )
    linked = FilePart.model_validate({"kind": "file", "file": {"uri": "https://files.example/a.csv"}})

    assert isinstance(inline.file, FileWithBytes)
    assert inline.file.bytes == "aGVsbG8="
    assert inline.file.mimeType == "text/plain"
    assert isinstance(linked.file, FileWithUri)
    assert linked.file.name is None

    with pytest.raises(ValidationError):
        FilePart.model_validate({"kind": "file", "file": {"name": "empty.txt"}})


def test_api_key_scheme_uses_in_on_the_wire():
    scheme = APIKeySecurityScheme.model_validate({"type": "apiKey", "in": "header", "name": "X-API-Key"})

    assert scheme.in_ == "header"
    assert scheme.model_dump(by_alias=True) == {
        "type": "apiKey",
        "description": None,
        "in": "header",
        "name": "X-API-Key",
    }
    with pytest.raises(ValidationError):
        APIKeySecurityScheme.model_validate({"type": "apiKey", "in": "body", "name": "key"})


def test_mutual_tls_scheme():
    assert MutualTLSSecurityScheme().type == "mutualTLS"
    with pytest.raises(ValidationError):
        MutualTLSSecurityScheme.model_validate({"type": "http"})


def test_jsonrpc_message_defaults():
    message = JSONRPCMessage()
    assert message.jsonrpc == "2.0"
    assert message.id is None

    request = JSONRPCRequest.model_validate({"jsonrpc": "2.0", "id": "r-1", "method": "tasks/get"})
    assert isinstance(request, JSONRPCMessage)
    assert request.params is None


def test_negative_history_length_rejected():
    with pytest.raises(ValidationError):
        MessageSendConfiguration(historyLength=-1)
    with pytest.raises(ValidationError):
        TaskQueryParams(id="task-1", historyLength=-1)
    assert TaskQueryParams(id="task-1", historyLength=0).historyLength == 0
