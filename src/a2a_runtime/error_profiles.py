"""JSON-RPC error payload profiles.

The ``basic`` profile keeps ``error.data`` a plain string for clients that
cannot handle structured data; structured detail is serialized to compact
JSON and the original kept aside as server-side diagnostics. The
``extended-json`` profile passes structured detail through unchanged.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .a2a.models import JSONRPCError
from .exceptions import A2ARuntimeError


class ErrorProfile(str, Enum):
    """Supported shapes of the JSON-RPC error ``data`` member."""

    BASIC = "basic"
    EXTENDED_JSON = "extended-json"


@dataclass(frozen=True)
class ErrorContract:
    """An error as it goes on the wire, plus anything held back from it."""

    code: int
    message: str
    detail: Optional[Any] = None
    diagnostics: Optional[Dict[str, Any]] = None

    def to_jsonrpc_error(self) -> JSONRPCError:
        return JSONRPCError(code=self.code, message=self.message, data=self.detail)


def parse_error_profile(raw_profile: Optional[str]) -> ErrorProfile:
    """Map an ``A2A_ERROR_PROFILE`` value to a profile; empty means basic."""
    if not raw_profile:
        return ErrorProfile.BASIC
    try:
        return ErrorProfile(raw_profile)
    except ValueError as exc:
        supported = ", ".join(profile.value for profile in ErrorProfile)
        raise ValueError(
            f"Unsupported A2A error profile '{raw_profile}'. Supported profiles: {supported}"
        ) from exc


def _as_string(detail: Any) -> str:
    try:
        return json.dumps(detail, separators=(",", ":"), sort_keys=True)
    except (TypeError, ValueError):
        return str(detail)


def build_rpc_error(
    *,
    profile: ErrorProfile,
    code: int,
    message: str,
    detail: Optional[Any] = None,
    diagnostics: Optional[Dict[str, Any]] = None,
) -> ErrorContract:
    """Shape ``detail`` for ``profile`` and collect diagnostics."""
    merged: Dict[str, Any] = dict(diagnostics or {})
    wire_detail = detail

    if profile is ErrorProfile.BASIC and detail is not None and not isinstance(detail, str):
        wire_detail = _as_string(detail)
        merged.setdefault("suppressed_detail", {"raw_detail": detail})

    return ErrorContract(
        code=code,
        message=message,
        detail=wire_detail,
        diagnostics=merged or None,
    )


def contract_for_exception(exc: A2ARuntimeError, profile: ErrorProfile) -> ErrorContract:
    """Build the error contract describing a runtime exception."""
    return build_rpc_error(
        profile=profile,
        code=exc.code,
        message=exc.message,
        detail=exc.error_detail(),
    )
