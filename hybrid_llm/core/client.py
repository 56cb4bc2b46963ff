"""Local-first, remote-fallback invocation of a language model.

``HybridClient.invoke`` tries the on-device model through the session manager
and switches to the remote bridge at most once when the local path is
unavailable or fails. Internal fallbacks are reported through
``metadata.fallback_reason``; only the final error leaves the client, always as
a ``HybridLLMError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import aclosing
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

from hybrid_llm.bridge.envelopes import InvokeEnvelope

from .errors import (
    HybridLLMError,
    InferenceError,
    ParseError,
    SchemaConstraintError,
    TransportError,
    UnavailableError,
    ValidationError,
)
from .multimodal import MultimodalContentBuilder
from .repair import parse_model_json
from .schema_adapter import SchemaAdapter
from .session import SessionManager
from .types import (
    Availability,
    ClientStatus,
    InvokeRequest,
    InvokeResponse,
    Provider,
    ResponseMetadata,
    SessionState,
)

if TYPE_CHECKING:
    from hybrid_llm.bridge.transport import Transport
    from hybrid_llm.providers.base import LocalSession

logger = logging.getLogger(__name__)

DEFAULT_AVAILABILITY_TTL = 30.0

_CANCELLED = object()

JSON_ONLY_INSTRUCTION = (
    "**IMPORTANT**: You must respond with ONLY valid JSON matching this exact schema. "
    "Do not include any explanatory text, markdown formatting, or code blocks."
)


def compose_prompt(request: InvokeRequest) -> str:
    body = request.prompt if request.prompt is not None else request.content.text()
    if request.system:
        return f"Instructions: {request.system}\n\nUser: {body}"
    return f"User: {body}"


def json_instruction_prompt(prompt: str, schema: dict[str, Any]) -> str:
    schema_text = json.dumps(schema, indent=2)
    return (
        f"{prompt}\n\n{JSON_ONLY_INSTRUCTION}\n\n"
        f"Required JSON Schema:\n{schema_text}\n\n"
        "Your response (JSON only):"
    )


class InvokeStream:
    """Text chunks from whichever provider served a streaming request."""

    def __init__(
        self,
        chunks: AsyncIterator[str],
        *,
        provider: Provider,
        metadata: ResponseMetadata,
        first: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self.provider = provider
        self.metadata = metadata
        self._chunks = chunks
        self._first = first
        self._cancel = cancel

    @classmethod
    def single(cls, response: InvokeResponse, cancel: asyncio.Event | None = None) -> InvokeStream:
        return cls(
            _empty(),
            provider=response.provider,
            metadata=response.metadata,
            first=response.content or None,
            cancel=cancel,
        )

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def aclose(self) -> None:
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()

    async def _iterate(self) -> AsyncIterator[str]:
        async with aclosing(self._chunks) as chunks:
            if self._first is not None and not self._cancelled():
                yield self._first

            while True:
                chunk = await _next_or_cancel(chunks, self._cancel)
                if chunk is _CANCELLED:
                    logger.info("Stream cancelled by caller")
                    break
                if chunk is None:
                    break
                yield chunk

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()


class HybridClient:
    def __init__(
        self,
        transport: Transport,
        sessions: SessionManager | None = None,
        *,
        schema_adapter: SchemaAdapter | None = None,
        content_builder: MultimodalContentBuilder | None = None,
        preference: Provider = Provider.LOCAL,
        availability_ttl: float = DEFAULT_AVAILABILITY_TTL,
        remote_model_name: str = "remote",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._sessions = sessions
        self._schema_adapter = schema_adapter or SchemaAdapter()
        self._content_builder = content_builder or MultimodalContentBuilder()
        self._preference = preference
        self._availability_ttl = availability_ttl
        self._remote_model_name = remote_model_name
        self._clock = clock
        self._availability: Availability | None = None
        self._availability_checked_at = 0.0
        self._last_error: str | None = None

    @property
    def preference(self) -> Provider:
        return self._preference

    async def invoke(self, request: InvokeRequest) -> InvokeResponse:
        """Answer one request, falling back to the remote bridge at most once.

        There is no cancellation event here; cancel the awaiting task instead.
        The cancellation propagates out of whichever await is pending and never
        triggers the remote fallback.
        """

        self._validate(request)
        started = time.perf_counter()

        use_local, fallback_reason = await self._route(request)
        if use_local:
            try:
                content, parsed = await self._invoke_local(request)
            except HybridLLMError as exc:
                fallback_reason = self._local_failed(exc)
            else:
                return InvokeResponse(
                    content=content,
                    provider=Provider.LOCAL,
                    parsed=parsed,
                    metadata=ResponseMetadata(
                        model=self._local_model_name(),
                        latency_ms=_elapsed_ms(started),
                    ),
                )

        return await self._invoke_remote(request, started, fallback_reason)

    async def stream(
        self,
        request: InvokeRequest,
        *,
        cancel: asyncio.Event | None = None,
    ) -> InvokeStream:
        self._validate(request)

        if request.schema is not None:
            return InvokeStream.single(await self.invoke(request), cancel=cancel)

        started = time.perf_counter()
        use_local, fallback_reason = await self._route(request)
        if use_local:
            chunks: AsyncIterator[str] | None = None
            try:
                session = await self._sessions.get_or_create()
                chunks = self._local_chunks(session, compose_prompt(request))
                first = await _next_or_cancel(chunks, cancel)
            except HybridLLMError as exc:
                if chunks is not None:
                    await chunks.aclose()
                fallback_reason = self._local_failed(exc)
            else:
                if first is _CANCELLED:
                    await chunks.aclose()
                    logger.info("Stream cancelled before the first chunk")
                    chunks, first = _empty(), None
                return InvokeStream(
                    chunks,
                    provider=Provider.LOCAL,
                    metadata=ResponseMetadata(
                        model=self._local_model_name(),
                        latency_ms=_elapsed_ms(started),
                    ),
                    first=first,
                    cancel=cancel,
                )

        response = await self._invoke_remote(request, started, fallback_reason)
        return InvokeStream.single(response, cancel=cancel)

    async def availability(self) -> Availability:
        if self._sessions is None:
            return Availability.UNAVAILABLE

        if self._sessions.state is SessionState.READY:
            return self._availability or Availability.AVAILABLE

        now = self._clock()
        if (
            self._availability is not None
            and now - self._availability_checked_at < self._availability_ttl
        ):
            return self._availability

        self._availability = await self._sessions.availability()
        self._availability_checked_at = now
        return self._availability

    def set_preference(self, preference: Provider | str) -> Provider:
        try:
            resolved = Provider(preference)
        except ValueError as exc:
            raise ValidationError(
                message="Invalid provider preference. Must be 'local' or 'remote'.",
            ) from exc

        if resolved is Provider.LOCAL and self._local_known_unavailable():
            logger.warning("Local model is unavailable; keeping preference %s", self._preference.value)
            return self._preference

        self._preference = resolved
        logger.info("Provider preference set to %s", resolved.value)
        return resolved

    def status(self) -> ClientStatus:
        state = self._sessions.state if self._sessions else SessionState.UNINITIALIZED
        local_ready = state is SessionState.READY or (
            self._availability is not None and self._availability.is_ready
        )
        return ClientStatus(
            preference=self._preference,
            active_provider=(
                Provider.LOCAL
                if self._preference is Provider.LOCAL and local_ready
                else Provider.REMOTE
            ),
            availability=self._availability,
            session_state=state,
            last_error=self._last_error,
        )

    async def aclose(self) -> None:
        if self._sessions is not None:
            await self._sessions.destroy()

        aclose = getattr(self._transport, "aclose", None)
        if aclose is not None:
            await aclose()

    def _validate(self, request: InvokeRequest) -> None:
        if (request.prompt is None) == (request.content is None):
            raise ValidationError(message="Exactly one of 'prompt' or 'content' must be provided.")

        if request.prompt is not None and not request.prompt.strip():
            raise ValidationError(message="prompt must not be empty.")

        if request.content is not None:
            self._content_builder.check_content(request.content)

        if request.schema is not None and not isinstance(request.schema, dict):
            raise ValidationError(message="schema must be a JSON Schema object.")

    async def _route(self, request: InvokeRequest) -> tuple[bool, str | None]:
        if self._preference is Provider.REMOTE:
            return False, None

        if self._sessions is None:
            return False, "No local model provider is configured."

        if request.content is not None and request.content.has_media:
            return False, "The local model does not accept media content."

        status = await self.availability()
        if not status.is_ready:
            return False, f"Local model unavailable (status={status.value})."

        return True, None

    async def _invoke_local(self, request: InvokeRequest) -> tuple[str, Any]:
        session = await self._sessions.get_or_create()
        prompt = compose_prompt(request)

        if request.schema is None:
            if request.stream:
                parts = [chunk async for chunk in self._local_chunks(session, prompt)]
                return "".join(parts), None
            return await _prompt(session, prompt), None

        constraint = self._schema_adapter.adapt(request.schema)
        try:
            raw = await _prompt(session, prompt, response_constraint=constraint)
        except SchemaConstraintError as exc:
            logger.warning(
                "Constrained decoding rejected the schema, retrying with prompt instructions: %s",
                exc,
            )
            engineered = json_instruction_prompt(prompt, self._schema_adapter.clean(request.schema))
            raw = await _prompt(session, engineered)

        parsed = parse_model_json(raw)
        return json.dumps(parsed, ensure_ascii=False), parsed

    async def _local_chunks(self, session: LocalSession, prompt: str) -> AsyncIterator[str]:
        stream = session.prompt_streaming(prompt)
        try:
            async for chunk in stream:
                if chunk:
                    yield chunk
        except HybridLLMError:
            raise
        except Exception as exc:
            raise InferenceError(message=f"Local streaming failed: {exc}") from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _invoke_remote(
        self,
        request: InvokeRequest,
        started: float,
        fallback_reason: str | None,
    ) -> InvokeResponse:
        envelope = InvokeEnvelope.from_request(request)
        try:
            result = await self._transport.send(envelope)
        except HybridLLMError as exc:
            self._last_error = exc.message
            raise
        except Exception as exc:
            self._last_error = str(exc)
            raise TransportError.connectivity(f"Remote bridge send failed: {exc}.") from exc

        if not result.ok:
            error = TransportError.from_remote_message(result.error or "no error detail")
            self._last_error = error.message
            raise error

        content = result.text or ""
        parsed = None
        if request.schema is not None:
            try:
                parsed = parse_model_json(content)
            except ParseError as exc:
                exc.provider = Provider.REMOTE.value
                self._last_error = exc.message
                raise
            content = json.dumps(parsed, ensure_ascii=False)

        return InvokeResponse(
            content=content,
            provider=Provider.REMOTE,
            parsed=parsed,
            metadata=ResponseMetadata(
                model=result.model or self._remote_model_name,
                latency_ms=_elapsed_ms(started),
                fallback_reason=fallback_reason,
            ),
        )

    def _local_failed(self, exc: HybridLLMError) -> str:
        if isinstance(exc, UnavailableError):
            self._availability = None
        self._last_error = exc.message
        logger.warning("Local model failed, falling back to remote: %s", exc)
        return f"{exc.kind}: {exc.message}"

    def _local_known_unavailable(self) -> bool:
        return self._sessions is None or self._availability is Availability.UNAVAILABLE

    def _local_model_name(self) -> str:
        return getattr(self._sessions.provider, "model_name", "local")


async def _prompt(session: LocalSession, text: str, **kwargs: Any) -> str:
    try:
        result = await session.prompt(text, **kwargs)
    except HybridLLMError:
        raise
    except Exception as exc:
        raise InferenceError(message=f"Local prompt failed: {exc}") from exc
    return result.strip()


async def _read_chunk(chunks: AsyncIterator[str]) -> str | None:
    try:
        return await anext(chunks)
    except StopAsyncIteration:
        return None


async def _next_or_cancel(
    chunks: AsyncIterator[str],
    cancel: asyncio.Event | None,
) -> str | None | object:
    """Next chunk, ``None`` when exhausted, or ``_CANCELLED`` once ``cancel`` is set.

    The pending read is cancelled as soon as the event fires, so a stalled
    provider never holds the consumer.
    """

    if cancel is None:
        return await _read_chunk(chunks)
    if cancel.is_set():
        return _CANCELLED

    next_chunk = asyncio.ensure_future(_read_chunk(chunks))
    cancelled = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({next_chunk, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancelled.cancel()
        if not next_chunk.done():
            next_chunk.cancel()
            await asyncio.gather(next_chunk, return_exceptions=True)

    if next_chunk.cancelled():
        return _CANCELLED
    return next_chunk.result()


async def _empty() -> AsyncIterator[str]:
    return
    yield


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
