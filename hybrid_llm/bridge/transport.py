from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from hybrid_llm.core.errors import TransportError
from hybrid_llm.core.multimodal import DEFAULT_MAX_MESSAGE_BYTES

from .envelopes import InvokeEnvelope, ResultEnvelope

if TYPE_CHECKING:
    from .handler import BridgeHandler

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0


class Transport(Protocol):
    async def send(self, envelope: InvokeEnvelope) -> ResultEnvelope: ...


def serialize_envelope(envelope: InvokeEnvelope, max_message_bytes: int) -> bytes:
    body = envelope.to_json_bytes()
    if len(body) > max_message_bytes:
        raise TransportError.payload_too_large(
            f"Request envelope is {len(body)} bytes; the bridge accepts at most "
            f"{max_message_bytes} bytes."
        )
    return body


class HttpBridgeTransport:
    """Send envelopes to a bridge endpoint over HTTP."""

    def __init__(
        self,
        url: str,
        *,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._max_message_bytes = max_message_bytes
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, envelope: InvokeEnvelope) -> ResultEnvelope:
        body = serialize_envelope(envelope, self._max_message_bytes)

        try:
            response = await self._client.post(
                self._url,
                content=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise TransportError.connectivity(f"Bridge request to {self._url} timed out.") from exc
        except httpx.HTTPError as exc:
            raise TransportError.connectivity(f"Bridge at {self._url} is unreachable: {exc}.") from exc

        if response.status_code == 413:
            raise TransportError.payload_too_large("Bridge rejected the request as too large.")

        try:
            result = ResultEnvelope.model_validate_json(response.content)
        except PydanticValidationError as exc:
            if response.status_code >= 400:
                raise TransportError.from_remote_message(
                    f"HTTP {response.status_code}: {response.text[:200]}"
                ) from exc
            raise TransportError.from_remote_message("malformed bridge response") from exc

        logger.debug("Bridge responded ok=%s (HTTP %d)", result.ok, response.status_code)
        return result

    async def aclose(self) -> None:
        await self._client.aclose()


class InProcessTransport:
    """Hand envelopes to a bridge handler in the same process.

    The envelope still crosses a JSON boundary so that size limits and
    serialization behave as they do over HTTP.
    """

    def __init__(
        self,
        handler: BridgeHandler,
        *,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
    ) -> None:
        self._handler = handler
        self._max_message_bytes = max_message_bytes

    async def send(self, envelope: InvokeEnvelope) -> ResultEnvelope:
        body = serialize_envelope(envelope, self._max_message_bytes)
        return await self._handler.handle(InvokeEnvelope.model_validate_json(body))
