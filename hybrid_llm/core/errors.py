from __future__ import annotations

from dataclasses import dataclass
from typing import Any

PAYLOAD_TOO_LARGE = "payload_too_large"
CONNECTIVITY = "connectivity"
REMOTE_FAILURE = "remote_failure"

_SIZE_SYMPTOMS = (
    "too large",
    "exceeds the maximum",
    "message length exceeded",
    "quotaexceeded",
    "quota exceeded",
    "413",
)


@dataclass
class HybridLLMError(Exception):
    """Structured error raised across the invocation boundary."""

    message: str
    status_code: int = 500
    kind: str = "internal_error"
    provider: str | None = None
    detail: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message

    def to_error(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "type": type(self).__name__,
            "message": self.message,
            "code": self.kind,
            "provider": self.provider,
        }
        if self.detail:
            error["detail"] = self.detail
        return error


@dataclass
class ValidationError(HybridLLMError):
    status_code: int = 400
    kind: str = "invalid_request"


@dataclass
class MediaTooLargeError(ValidationError):
    kind: str = "media_too_large"


@dataclass
class UnavailableError(HybridLLMError):
    status_code: int = 503
    kind: str = "local_unavailable"
    provider: str | None = "local"


@dataclass
class InferenceError(HybridLLMError):
    status_code: int = 502
    kind: str = "inference_failed"
    provider: str | None = "local"


@dataclass
class SchemaConstraintError(InferenceError):
    kind: str = "schema_constraint_rejected"


@dataclass
class ParseError(HybridLLMError):
    status_code: int = 502
    kind: str = "unparseable_output"
    raw_excerpt: str = ""


@dataclass
class TransportError(HybridLLMError):
    status_code: int = 503
    kind: str = CONNECTIVITY
    provider: str | None = "remote"

    @property
    def is_payload_too_large(self) -> bool:
        return self.kind == PAYLOAD_TOO_LARGE

    @classmethod
    def payload_too_large(cls, message: str) -> TransportError:
        return cls(
            message=f"{message} Use smaller media or a shorter prompt.",
            status_code=413,
            kind=PAYLOAD_TOO_LARGE,
        )

    @classmethod
    def connectivity(cls, message: str) -> TransportError:
        return cls(
            message=f"{message} Retry later.",
            status_code=503,
            kind=CONNECTIVITY,
        )

    @classmethod
    def from_remote_message(cls, message: str) -> TransportError:
        lowered = message.lower()
        if any(symptom in lowered for symptom in _SIZE_SYMPTOMS):
            return cls.payload_too_large(f"Remote bridge rejected the payload: {message}.")

        return cls(
            message=f"Remote invocation failed: {message}",
            status_code=502,
            kind=REMOTE_FAILURE,
        )
