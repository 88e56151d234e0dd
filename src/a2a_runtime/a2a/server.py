"""
A2A JSON-RPC 2.0 dispatcher

Parses JSON-RPC payloads, dispatches them to registered method handlers and
builds response envelopes. Transport-neutral: the HTTP layer hands in the
decoded body and writes out whatever comes back, either a response object
(or batch list) or an ``RPCStream`` of envelopes for server-sent events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, List, Set, Union

from pydantic import BaseModel, ValidationError

from ..error_profiles import ErrorProfile, build_rpc_error, contract_for_exception
from ..exceptions import A2ARuntimeError, InvalidParams
from .models import JSONRPCError, JSONRPCErrorResponse, JSONRPCRequest, JSONRPCSuccessResponse

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


def serialize_a2a(obj: Any) -> Any:
    """Convert Pydantic models (and nested structures) into JSON-serializable dicts without nulls."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", exclude_none=True, by_alias=True)
    if isinstance(obj, list):
        return [serialize_a2a(item) for item in obj]
    if isinstance(obj, dict):
        return {key: serialize_a2a(value) for key, value in obj.items() if value is not None}
    return obj


@dataclass
class RPCStream:
    """Response of a streaming method: JSON-RPC envelopes, one per event."""

    request_id: Any
    payloads: AsyncIterator[Dict[str, Any]]


RPCResponse = Union[None, Dict[str, Any], List[Dict[str, Any]], RPCStream]


class JSONRPCServer:
    """
    A2A JSON-RPC 2.0 server.

    Handles single and batch requests, dispatches to method handlers, and
    maps runtime exceptions to error objects according to the configured
    error profile.
    """

    def __init__(self, error_profile: ErrorProfile = ErrorProfile.BASIC):
        self.methods: Dict[str, Handler] = {}
        self.streaming_methods: Set[str] = set()
        self.error_profile = error_profile

    def register_method(self, method_name: str, handler: Handler, *, streaming: bool = False) -> None:
        """Register an A2A method handler.

        Streaming handlers return an async iterable of events (or a final
        exception instance) instead of a single result.
        """
        self.methods[method_name] = handler
        if streaming:
            self.streaming_methods.add(method_name)
        else:
            self.streaming_methods.discard(method_name)
        logger.debug("Registered A2A method handler", extra={"method": method_name, "streaming": streaming})

    @property
    def supported_methods(self) -> List[str]:
        return sorted(self.methods)

    def is_streaming_request(self, payload: Any) -> bool:
        return isinstance(payload, dict) and payload.get("method") in self.streaming_methods

    def parse_error_response(self, error: str) -> Dict[str, Any]:
        logger.error("Invalid JSON in request body", extra={"error": error})
        return self._create_error_response(id=None, code=PARSE_ERROR, message="Invalid JSON payload")

    async def handle_payload(self, payload: Any) -> RPCResponse:
        """Handle a decoded request body: one request object or a batch list."""
        if isinstance(payload, list):
            if not payload:
                return self._create_error_response(
                    id=None, code=INVALID_REQUEST, message="Empty batch request"
                )
            responses = []
            for request_data in payload:
                if self.is_streaming_request(request_data):
                    responses.append(
                        self._create_error_response(
                            id=request_data.get("id"),
                            code=INVALID_REQUEST,
                            message="Streaming methods cannot be used in a batch",
                        )
                    )
                    continue
                response = await self._handle_single_request(request_data)
                if response is not None:
                    responses.append(response)
            return responses or None

        return await self._handle_single_request(payload)

    async def _handle_single_request(self, request_data: Any) -> Union[None, Dict[str, Any], RPCStream]:
        """Handle a single JSON-RPC request."""
        if not isinstance(request_data, dict):
            return self._create_error_response(
                id=None, code=INVALID_REQUEST, message="Invalid request format"
            )
        try:
            request = JSONRPCRequest.model_validate(request_data)
        except ValidationError as e:
            logger.error("Invalid JSON-RPC request format", extra={"error": str(e)})
            return self._create_error_response(
                id=request_data.get("id"),
                code=INVALID_REQUEST,
                message="Invalid request format",
            )

        request_id = request.id
        method_name = request.method
        params = request.params or {}
        is_notification = "id" not in request_data
        streaming = method_name in self.streaming_methods

        logger.info("Processing A2A request", extra={"method": method_name, "id": request_id})

        handler = self.methods.get(method_name)
        if handler is None:
            logger.warning("Method not found", extra={"method": method_name})
            response = self._create_error_response(
                id=request_id, code=METHOD_NOT_FOUND, message="Method not found"
            )
            return self._single_error_stream(request_id, response) if streaming else response

        try:
            result = await handler(params)
        except Exception as exc:
            response = self._error_response_for(request_id, method_name, exc)
            if streaming:
                return self._single_error_stream(request_id, response)
            return None if is_notification else response

        if streaming:
            return RPCStream(request_id=request_id, payloads=self._iter_envelopes(request_id, result))

        if is_notification:
            return None
        return JSONRPCSuccessResponse(id=request_id, result=serialize_a2a(result)).model_dump(mode="json")

    async def _iter_envelopes(
        self, request_id: Any, items: AsyncIterable[Any]
    ) -> AsyncIterator[Dict[str, Any]]:
        async for item in items:
            if isinstance(item, Exception):
                yield self._error_response_for(request_id, "stream", item)
                return
            yield JSONRPCSuccessResponse(id=request_id, result=serialize_a2a(item)).model_dump(mode="json")

    def _single_error_stream(self, request_id: Any, response: Dict[str, Any]) -> RPCStream:
        async def payloads() -> AsyncIterator[Dict[str, Any]]:
            yield response

        return RPCStream(request_id=request_id, payloads=payloads())

    def _error_response_for(self, request_id: Any, method_name: str, exc: Exception) -> Dict[str, Any]:
        """Map an exception raised by a handler to a JSON-RPC error response."""
        if isinstance(exc, ValidationError):
            exc = InvalidParams(
                "Invalid parameters",
                detail=exc.errors(include_url=False, include_context=False, include_input=False),
            )

        if isinstance(exc, A2ARuntimeError):
            contract = contract_for_exception(exc, self.error_profile)
            logger.warning(
                "A2A request failed",
                extra={
                    "method": method_name,
                    "code": contract.code,
                    "error": contract.message,
                    "diagnostics": contract.diagnostics,
                },
            )
        else:
            logger.error(
                "Unexpected error in method handler",
                extra={"method": method_name, "error": str(exc)},
                exc_info=exc,
            )
            contract = build_rpc_error(
                profile=self.error_profile,
                code=INTERNAL_ERROR,
                message="Internal server error",
            )

        return _error_envelope(request_id, contract.to_jsonrpc_error())

    def _create_error_response(self, id: Any, code: int, message: str, data: Any = None) -> Dict[str, Any]:
        """Create a JSON-RPC error response."""
        contract = build_rpc_error(profile=self.error_profile, code=code, message=message, detail=data)
        return _error_envelope(id, contract.to_jsonrpc_error())


def _error_envelope(request_id: Any, error: JSONRPCError) -> Dict[str, Any]:
    envelope = JSONRPCErrorResponse(
        id=request_id if isinstance(request_id, (int, str)) else None,
        error=error,
    ).model_dump(mode="json")
    if envelope["error"].get("data") is None:
        envelope["error"].pop("data", None)
    return envelope
