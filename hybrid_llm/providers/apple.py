from __future__ import annotations

import importlib
import importlib.util
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator

from hybrid_llm.core.errors import (
    HybridLLMError,
    InferenceError,
    SchemaConstraintError,
    UnavailableError,
)
from hybrid_llm.core.types import Availability, SessionOptions

if TYPE_CHECKING:
    import apple_fm_sdk as fm_types

logger = logging.getLogger(__name__)

fm: Any = None
if importlib.util.find_spec("apple_fm_sdk") is not None:
    fm = importlib.import_module("apple_fm_sdk")
HAS_APPLE_FM_SDK = fm is not None

APPLE_MODEL_ID = "apple.fm.system"


class AppleFoundationModelProvider:
    """Local provider backed by Apple's on-device Foundation Models."""

    model_name = APPLE_MODEL_ID

    async def availability(self) -> Availability:
        if not HAS_APPLE_FM_SDK:
            return Availability.UNAVAILABLE

        model = fm.SystemLanguageModel()
        is_available, reason = model.is_available()
        if is_available:
            return Availability.AVAILABLE

        reason_name = getattr(reason, "name", str(reason) if reason else "UNKNOWN")
        logger.info("Foundation model is unavailable (reason=%s)", reason_name)
        if "NOT_READY" in reason_name.upper():
            return Availability.AFTER_DOWNLOAD
        return Availability.UNAVAILABLE

    async def create_session(self, options: SessionOptions) -> AppleSession:
        if not HAS_APPLE_FM_SDK:
            raise UnavailableError(
                message="Foundation model SDK is not installed in this environment.",
            )

        if options.temperature is not None or options.top_k is not None:
            logger.debug("Sampling options are not applied to Foundation Models sessions")

        model = fm.SystemLanguageModel()
        instructions = "\n\n".join(options.system_messages)
        if instructions:
            session = fm.LanguageModelSession(instructions=instructions, model=model)
        else:
            session = fm.LanguageModelSession(model=model)
        return AppleSession(session)


class AppleSession:
    def __init__(self, session: fm_types.LanguageModelSession) -> None:
        self._session: fm_types.LanguageModelSession | None = session

    async def prompt(
        self,
        text: str,
        *,
        response_constraint: dict[str, Any] | None = None,
    ) -> str:
        session = self._require_session()
        try:
            if response_constraint is None:
                return str(await session.respond(text))

            generated = await session.respond(text, json_schema=response_constraint)
            return generated.to_json()
        except Exception as exc:
            raise map_apple_fm_error(exc) from exc

    async def prompt_streaming(self, text: str) -> AsyncIterator[str]:
        session = self._require_session()

        previous_snapshot = ""
        try:
            async for snapshot in session.stream_response(text):
                if snapshot.startswith(previous_snapshot):
                    delta = snapshot[len(previous_snapshot) :]
                else:
                    delta = snapshot

                previous_snapshot = snapshot

                if delta:
                    yield delta
        except Exception as exc:
            raise map_apple_fm_error(exc) from exc

    async def destroy(self) -> None:
        # Sessions are released with their last reference.
        self._session = None

    def _require_session(self) -> fm_types.LanguageModelSession:
        if self._session is None:
            raise UnavailableError(message="Foundation model session has been destroyed.")
        return self._session


def map_apple_fm_error(exc: Exception) -> HybridLLMError:
    """Map Foundation Models exceptions to the invocation error taxonomy."""

    if isinstance(exc, HybridLLMError):
        return exc

    if HAS_APPLE_FM_SDK and isinstance(
        exc, (fm.InvalidGenerationSchemaError, fm.UnsupportedGuideError)
    ):
        return SchemaConstraintError(message=str(exc))

    if HAS_APPLE_FM_SDK and isinstance(exc, fm.AssetsUnavailableError):
        return UnavailableError(message=str(exc), kind="assets_unavailable")

    if HAS_APPLE_FM_SDK and isinstance(exc, fm.ExceededContextWindowSizeError):
        return InferenceError(message=str(exc), kind="context_length_exceeded")

    if HAS_APPLE_FM_SDK and isinstance(
        exc, (fm.GuardrailViolationError, fm.RefusalError)
    ):
        return InferenceError(message=str(exc), kind="content_policy_violation")

    if HAS_APPLE_FM_SDK and isinstance(
        exc, (fm.RateLimitedError, fm.ConcurrentRequestsError)
    ):
        return InferenceError(message=str(exc), kind="rate_limited")

    if HAS_APPLE_FM_SDK and isinstance(exc, fm.DecodingFailureError):
        return InferenceError(message=str(exc), kind="decoding_failure")

    if HAS_APPLE_FM_SDK and isinstance(exc, (fm.GenerationError, fm.FoundationModelsError)):
        return InferenceError(message=str(exc), kind="generation_error")

    return InferenceError(message=f"Unexpected local model error: {exc}")
