from __future__ import annotations

from typing import Any, AsyncIterator, Protocol

from hybrid_llm.core.types import Availability, SessionOptions


class LocalSession(Protocol):
    async def prompt(
        self,
        text: str,
        *,
        response_constraint: dict[str, Any] | None = None,
    ) -> str: ...

    def prompt_streaming(self, text: str) -> AsyncIterator[str]: ...

    async def destroy(self) -> None: ...


class LocalModelProvider(Protocol):
    """On-device model capability.

    ``LocalSession.prompt`` raises ``SchemaConstraintError`` when the provider
    cannot honor ``response_constraint``.
    """

    model_name: str

    async def availability(self) -> Availability: ...

    async def create_session(self, options: SessionOptions) -> LocalSession: ...


class RemoteModel(Protocol):
    model_name: str

    async def generate(self, parts: list[dict[str, Any]], *, stream: bool = False) -> str: ...
