"""Error taxonomy shared by every component.

Each error carries a machine-readable `code` used in HTTP and protocol
responses:

- `StoreError`: vector backend failures (`store_unreachable`, `invalid_document`).
- `InferenceError`: generation failures (`inference_unavailable`,
  `inference_timeout`, `invalid_config`).
- `CapacityError`: admission caps (`analysis_limit_reached`,
  `ingestion_limit_reached`, `client_limit_reached`).
- `ProtocolError`: real-time protocol violations (`malformed_message`,
  `unknown_type`, `session_not_found`).
"""

from __future__ import annotations


class BrainError(Exception):
    """Base class for all orchestrator errors."""

    code = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class InitializationError(BrainError):
    code = "initialization_failed"


class InvalidRequestError(BrainError):
    """A well-formed request whose arguments fail validation."""

    code = "invalid_request"


class StoreError(BrainError):
    code = "store_error"


class StoreUnreachableError(StoreError):
    code = "store_unreachable"


class InvalidDocumentError(StoreError):
    code = "invalid_document"


class InferenceError(BrainError):
    code = "inference_error"


class InferenceUnavailableError(InferenceError):
    code = "inference_unavailable"


class InferenceTimeoutError(InferenceUnavailableError):
    """Timed out; still an unavailability so fallback logic treats it alike."""

    code = "inference_timeout"


class InferenceConfigError(InferenceError):
    code = "invalid_config"


class CapacityError(BrainError):
    code = "capacity_exceeded"


class AnalysisLimitReachedError(CapacityError):
    code = "analysis_limit_reached"


class IngestionLimitReachedError(CapacityError):
    code = "ingestion_limit_reached"


class ClientLimitReachedError(CapacityError):
    code = "client_limit_reached"


class ProtocolError(BrainError):
    code = "protocol_error"


class MalformedMessageError(ProtocolError):
    code = "malformed_message"


class UnknownMessageTypeError(ProtocolError):
    code = "unknown_type"


class SessionNotFoundError(ProtocolError):
    code = "session_not_found"
