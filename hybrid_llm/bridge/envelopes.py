from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from hybrid_llm.core.types import InvokeRequest, MultimodalContent

INVOKE = "INVOKE"


class InlineData(BaseModel):
    mime_type: str
    data: str


class WirePart(BaseModel):
    text: str | None = None
    inline_data: InlineData | None = None


class InvokePayload(BaseModel):
    prompt: str | None = None
    content: list[WirePart] | None = None
    system: str | None = None
    json_schema: dict[str, Any] | None = Field(default=None, alias="schema")
    stream: bool = False

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @classmethod
    def from_request(cls, request: InvokeRequest) -> InvokePayload:
        content = None
        if request.content is not None:
            content = [WirePart.model_validate(part) for part in request.content.to_wire()]

        return cls(
            prompt=request.prompt,
            content=content,
            system=request.system,
            json_schema=request.schema,
            stream=request.stream,
        )

    def to_request(self) -> InvokeRequest:
        content = None
        if self.content is not None:
            content = MultimodalContent.from_wire(
                [part.model_dump(exclude_none=True) for part in self.content]
            )

        return InvokeRequest(
            prompt=self.prompt,
            content=content,
            system=self.system,
            schema=self.json_schema,
            stream=self.stream,
        )


class InvokeEnvelope(BaseModel):
    type: Literal["INVOKE"] = INVOKE
    payload: InvokePayload

    @classmethod
    def from_request(cls, request: InvokeRequest) -> InvokeEnvelope:
        return cls(payload=InvokePayload.from_request(request))

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class ResultEnvelope(BaseModel):
    ok: bool
    provider: Literal["remote"] = "remote"
    text: str | None = None
    error: str | None = None
    model: str | None = None

    model_config = ConfigDict(extra="allow")
