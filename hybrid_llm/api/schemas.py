from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

from hybrid_llm.bridge.envelopes import InvokePayload


class InvokeRequestBody(InvokePayload):
    """Body of ``POST /v1/invoke``; same fields as the bridge payload."""


class PreferenceBody(BaseModel):
    provider: Literal["local", "remote"]

    model_config = ConfigDict(extra="allow")
