"""Runtime configuration for the hybrid invocation service."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    # Schema adaptation for the local model
    max_top_level_properties: int = Field(default=5, alias="HYBRID_LLM_MAX_TOP_LEVEL_PROPERTIES")
    max_schema_depth: int = Field(default=3, alias="HYBRID_LLM_MAX_SCHEMA_DEPTH")
    action_optional_ratio: float = Field(default=0.8, alias="HYBRID_LLM_ACTION_OPTIONAL_RATIO")

    # Media and bridge size limits
    max_message_bytes: int = Field(default=32 * 1024 * 1024, alias="HYBRID_LLM_MAX_MESSAGE_BYTES")
    max_image_bytes: int = Field(default=5 * 1024 * 1024, alias="HYBRID_LLM_MAX_IMAGE_BYTES")
    max_audio_bytes: int = Field(default=25 * 1024 * 1024, alias="HYBRID_LLM_MAX_AUDIO_BYTES")

    # Routing
    availability_ttl_seconds: float = Field(default=30.0, alias="HYBRID_LLM_AVAILABILITY_TTL_SECONDS")
    provider_preference: Literal["local", "remote"] = Field(
        default="local", alias="HYBRID_LLM_PROVIDER_PREFERENCE"
    )

    # Local session
    local_temperature: float | None = Field(default=None, alias="HYBRID_LLM_LOCAL_TEMPERATURE")
    local_top_k: int | None = Field(default=None, alias="HYBRID_LLM_LOCAL_TOP_K")
    local_system_prompt: str | None = Field(default=None, alias="HYBRID_LLM_LOCAL_SYSTEM_PROMPT")

    # Remote side
    remote_model: str = Field(default="gemini-2.0-flash", alias="HYBRID_LLM_REMOTE_MODEL")
    google_api_key: str | None = Field(default=None, alias="GOOGLE_API_KEY")
    bridge_url: str = Field(default="http://localhost:8080/v1/bridge", alias="HYBRID_LLM_BRIDGE_URL")
    bridge_timeout_seconds: float = Field(default=120.0, alias="HYBRID_LLM_BRIDGE_TIMEOUT_SECONDS")
    max_remote_prompt_chars: int = Field(default=30_000, alias="HYBRID_LLM_MAX_REMOTE_PROMPT_CHARS")


@lru_cache
def get_settings() -> Settings:
    return Settings()
