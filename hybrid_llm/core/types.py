from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .errors import ValidationError


class Provider(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class Availability(str, Enum):
    READILY = "readily"
    AFTER_DOWNLOAD = "after_download"
    UNAVAILABLE = "unavailable"
    AVAILABLE = "available"

    @property
    def is_ready(self) -> bool:
        return self in (Availability.READILY, Availability.AVAILABLE)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CREATING = "creating"
    READY = "ready"
    DESTROYED = "destroyed"


@dataclass(slots=True, frozen=True)
class TextPart:
    text: str

    def to_wire(self) -> dict[str, Any]:
        return {"text": self.text}


@dataclass(slots=True, frozen=True)
class InlineDataPart:
    data: bytes
    mime_type: str

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def encoded_size(self) -> int:
        return encoded_length(len(self.data))

    def to_wire(self) -> dict[str, Any]:
        return {"inline_data": {"mime_type": self.mime_type, "data": self.base64_data}}


Part = Union[TextPart, InlineDataPart]


def encoded_length(raw_length: int) -> int:
    """Length of the padded base64 encoding of ``raw_length`` bytes."""

    return 4 * ((raw_length + 2) // 3)


def part_from_wire(payload: dict[str, Any]) -> Part:
    text = payload.get("text")
    inline = payload.get("inline_data")

    if (text is None) == (inline is None):
        raise ValidationError(
            message="Each content part must carry exactly one of 'text' or 'inline_data'.",
        )

    if text is not None:
        return TextPart(text=str(text))

    mime_type = inline.get("mime_type") if isinstance(inline, dict) else None
    data = inline.get("data") if isinstance(inline, dict) else None
    if not mime_type or not isinstance(data, str):
        raise ValidationError(
            message="inline_data parts need both 'mime_type' and base64 'data'.",
        )

    try:
        decoded = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(message=f"inline_data is not valid base64: {exc}") from exc

    return InlineDataPart(data=decoded, mime_type=mime_type)


@dataclass(slots=True, frozen=True)
class MultimodalContent:
    parts: tuple[Part, ...]

    @property
    def has_media(self) -> bool:
        return any(isinstance(part, InlineDataPart) for part in self.parts)

    def text(self) -> str:
        return "\n\n".join(
            part.text for part in self.parts if isinstance(part, TextPart) and part.text
        )

    def to_wire(self) -> list[dict[str, Any]]:
        return [part.to_wire() for part in self.parts]

    @classmethod
    def from_wire(cls, parts: list[dict[str, Any]]) -> MultimodalContent:
        return cls(parts=tuple(part_from_wire(part) for part in parts))


@dataclass(slots=True)
class InvokeRequest:
    prompt: str | None = None
    content: MultimodalContent | None = None
    system: str | None = None
    schema: dict[str, Any] | None = None
    stream: bool = False


@dataclass(slots=True)
class ResponseMetadata:
    model: str
    latency_ms: float
    fallback_reason: str | None = None


@dataclass(slots=True)
class InvokeResponse:
    content: str
    provider: Provider
    metadata: ResponseMetadata
    parsed: Any = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "content": self.content,
            "provider": self.provider.value,
            "metadata": {
                "model": self.metadata.model,
                "latencyMs": round(self.metadata.latency_ms, 3),
                "fallbackReason": self.metadata.fallback_reason,
            },
        }
        if self.parsed is not None:
            payload["parsed"] = self.parsed
        return payload


@dataclass(slots=True)
class SessionOptions:
    temperature: float | None = None
    top_k: int | None = None
    system_messages: tuple[str, ...] = field(default_factory=tuple)


@dataclass(slots=True)
class ClientStatus:
    preference: Provider
    active_provider: Provider
    availability: Availability | None
    session_state: SessionState
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "preference": self.preference.value,
            "activeProvider": self.active_provider.value,
            "availability": self.availability.value if self.availability else "unknown",
            "sessionState": self.session_state.value,
            "lastError": self.last_error,
        }
