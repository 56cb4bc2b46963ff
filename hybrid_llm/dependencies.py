from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from hybrid_llm.bridge.handler import BridgeHandler
from hybrid_llm.bridge.transport import HttpBridgeTransport
from hybrid_llm.config import Settings
from hybrid_llm.core.client import HybridClient
from hybrid_llm.core.errors import HybridLLMError, ValidationError
from hybrid_llm.core.multimodal import MultimodalContentBuilder
from hybrid_llm.core.schema_adapter import SchemaAdapter
from hybrid_llm.core.session import SessionManager
from hybrid_llm.core.types import Provider, SessionOptions
from hybrid_llm.providers.apple import AppleFoundationModelProvider


def build_client(settings: Settings) -> HybridClient:
    sessions = SessionManager(
        AppleFoundationModelProvider(),
        SessionOptions(
            temperature=settings.local_temperature,
            top_k=settings.local_top_k,
            system_messages=(
                (settings.local_system_prompt,) if settings.local_system_prompt else ()
            ),
        ),
    )
    transport = HttpBridgeTransport(
        settings.bridge_url,
        max_message_bytes=settings.max_message_bytes,
        timeout=settings.bridge_timeout_seconds,
    )
    return HybridClient(
        transport,
        sessions,
        schema_adapter=SchemaAdapter(
            max_depth=settings.max_schema_depth,
            max_properties=settings.max_top_level_properties,
            action_ratio=settings.action_optional_ratio,
        ),
        content_builder=MultimodalContentBuilder(
            max_image_bytes=settings.max_image_bytes,
            max_audio_bytes=settings.max_audio_bytes,
            max_message_bytes=settings.max_message_bytes,
        ),
        preference=Provider(settings.provider_preference),
        availability_ttl=settings.availability_ttl_seconds,
        remote_model_name=settings.remote_model,
    )


def build_bridge_handler(settings: Settings) -> BridgeHandler | None:
    if not settings.google_api_key:
        return None

    from hybrid_llm.providers.gemini import GeminiRemoteModel

    return BridgeHandler(
        GeminiRemoteModel(settings.google_api_key, settings.remote_model),
        max_prompt_chars=settings.max_remote_prompt_chars,
    )


def get_client(request: Request) -> HybridClient:
    return request.app.state.client


def get_bridge_handler(request: Request) -> BridgeHandler | None:
    return request.app.state.bridge_handler


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(HybridLLMError)
    async def handle_hybrid_error(
        _request: Request,
        exc: HybridLLMError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.to_error()},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        first_error = exc.errors()[0]["msg"] if exc.errors() else "Invalid request"
        validation_error = ValidationError(message=first_error)
        return JSONResponse(
            status_code=validation_error.status_code,
            content={"error": validation_error.to_error()},
        )
