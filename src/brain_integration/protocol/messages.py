"""Wire envelope of the real-time protocol.

Client → server::

    {"type": "analysis_request" | "context_request" | "heartbeat",
     "data": {...}, "request_id": "optional correlation id"}

Server → client::

    {"type": "<type>_response", "request_id": ..., "result": ...}
    {"type": "<type>_response", "request_id": ..., "error": {"code": ..., "message": ...}}
    {"type": "heartbeat_ack", "request_id": ..., "timestamp": ...}
    {"type": "connected", "client_id": ..., "heartbeat_interval": ...}
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from brain_integration.errors import (
    BrainError,
    InvalidRequestError,
    MalformedMessageError,
    UnknownMessageTypeError,
)
from brain_integration.types import AnalysisType, utcnow

ANALYSIS_REQUEST = "analysis_request"
CONTEXT_REQUEST = "context_request"
HEARTBEAT = "heartbeat"
REQUEST_TYPES = frozenset({ANALYSIS_REQUEST, CONTEXT_REQUEST})
MESSAGE_TYPES = REQUEST_TYPES | {HEARTBEAT}


class Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)


class AnalysisRequestData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    financial_data: dict[str, Any]
    analysis_type: AnalysisType = AnalysisType.GENERAL
    options: dict[str, Any] = Field(default_factory=dict)


class ContextRequestData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(min_length=1)
    max_docs: int | None = Field(default=None, ge=1, le=100)
    similarity_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    metadata_filter: dict[str, Any] | None = None


def parse_envelope(raw: str | bytes) -> Envelope:
    """Decode one frame; raises `ProtocolError` subclasses on violations."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedMessageError(f"frame is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedMessageError("frame must be a JSON object")
    if isinstance(payload.get("request_id"), int):
        payload["request_id"] = str(payload["request_id"])
    try:
        envelope = Envelope.model_validate(payload)
    except ValidationError as exc:
        raise MalformedMessageError(f"invalid envelope: {exc.errors()[0]['msg']}") from exc
    if envelope.type not in MESSAGE_TYPES:
        raise UnknownMessageTypeError(f"unknown message type {envelope.type!r}")
    return envelope


def parse_data(model: type[BaseModel], data: dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise InvalidRequestError(f"invalid request data: {exc.errors()[0]['msg']}") from exc


def response(message_type: str, request_id: str | None, result: Any) -> dict[str, Any]:
    return {"type": f"{message_type}_response", "request_id": request_id, "result": result}


def error_response(
    message_type: str, request_id: str | None, error: BrainError
) -> dict[str, Any]:
    return {
        "type": f"{message_type}_response",
        "request_id": request_id,
        "error": error.to_payload(),
    }


def heartbeat_ack(request_id: str) -> dict[str, Any]:
    return {"type": "heartbeat_ack", "request_id": request_id, "timestamp": utcnow().isoformat()}


def connected(client_id: str, heartbeat_interval: float) -> dict[str, Any]:
    return {
        "type": "connected",
        "client_id": client_id,
        "heartbeat_interval": heartbeat_interval,
    }


def error_message(error: BrainError) -> dict[str, Any]:
    """Frame for errors not tied to a request: violations and rejected connects."""
    return {"type": "error", "request_id": None, "error": error.to_payload()}
