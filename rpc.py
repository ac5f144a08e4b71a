"""JSON-RPC wire model for the archive proxy.

Requests are validated with pydantic, block tags are parsed into routing
heights, and every failure that can happen while handling one message is a
``ProxyError`` carrying the JSON-RPC error code sent back to the client.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr, ValidationError, field_validator

JSONRPC_VERSION = "2.0"

# ── Error codes ───────────────────────────────────────────────────────────────────

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
ROUTING_ERROR = -32001
BACKEND_ERROR = -32002

# Methods whose block tag selects the backend, mapped to the parameter
# position of that tag (always the last positional parameter).
BLOCK_TAG_POSITIONS: dict[str, int] = {
    "eth_getBalance": 1,
    "eth_getCode": 1,
    "eth_getTransactionCount": 1,
    "eth_getStorageAt": 2,
    "eth_call": 1,
    "eth_estimateGas": 1,
}

LATEST = "latest"
_HEX_DIGITS_RE = re.compile(r"[0-9a-fA-F]+")


# ── Exceptions ────────────────────────────────────────────────────────────────────


class ProxyError(Exception):
    """Base exception for failures local to one inbound message."""

    code = INTERNAL_ERROR

    def __init__(self, detail: str, data: Any = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.data = data


class MalformedRequest(ProxyError):
    code = INVALID_REQUEST

    def __init__(self, detail: str, data: Any = None, code: Optional[int] = None) -> None:
        super().__init__(detail, data)
        if code is not None:
            self.code = code


class BlockTagValidationError(ProxyError):
    code = INVALID_PARAMS


# ── Request model ─────────────────────────────────────────────────────────────────


class RpcRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: Union[StrictInt, StrictStr]
    method: StrictStr
    params: list[Any] = []

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("method must not be empty")
        return v


def decode_payload(raw: Union[str, bytes]) -> Any:
    """Decode one inbound text frame into JSON."""
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedRequest(f"Parse error: {e}", code=PARSE_ERROR) from e


def parse_request(payload: Any) -> RpcRequest:
    """Validate a decoded JSON object as an RpcRequest."""
    if not isinstance(payload, dict):
        raise MalformedRequest("Request must be a JSON object")
    try:
        return RpcRequest.model_validate(payload)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise MalformedRequest("Invalid request: " + "; ".join(errors)) from e


def request_id_of(payload: Any) -> Union[int, str, None]:
    """Best-effort id extraction so error replies can still be correlated."""
    if isinstance(payload, dict):
        rid = payload.get("id")
        if isinstance(rid, (int, str)) and not isinstance(rid, bool):
            return rid
    return None


# ── Block tags ────────────────────────────────────────────────────────────────────


def parse_block_tag(value: Any) -> Optional[int]:
    """Return the height named by a block tag, or None for the latest block."""
    if value is None or value == LATEST:
        return None
    if not isinstance(value, str):
        raise BlockTagValidationError(f"Expected block tag to be a string, got {type(value).__name__}")
    if not value.startswith("0x"):
        raise BlockTagValidationError(f"Expected block tag to start with 0x: {value!r}")
    digits = value[2:]
    if not _HEX_DIGITS_RE.fullmatch(digits):
        raise BlockTagValidationError(f"Invalid hex block tag: {value!r}")
    return int(digits, 16)


def height_selector(request: RpcRequest) -> Optional[int]:
    """Extract the routing height of a request (None routes to the newest backend)."""
    pos = BLOCK_TAG_POSITIONS.get(request.method)
    if pos is None or pos >= len(request.params):
        return None
    return parse_block_tag(request.params[pos])


# ── Responses ─────────────────────────────────────────────────────────────────────


def result_response(request_id: Union[int, str, None], result: Any) -> dict[str, Any]:
    return {"id": request_id, "jsonrpc": JSONRPC_VERSION, "result": result}


def error_response(
    request_id: Union[int, str, None],
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"id": request_id, "jsonrpc": JSONRPC_VERSION, "error": error}


def error_from_exception(request_id: Union[int, str, None], exc: ProxyError) -> dict[str, Any]:
    return error_response(request_id, exc.code, exc.detail, exc.data)
