from __future__ import annotations

import base64
import logging
from typing import Any

from google import genai
from google.genai import types

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_MODEL = "gemini-2.0-flash"


class GeminiRemoteModel:
    """Remote model used by the bridge handler."""

    def __init__(self, api_key: str, model: str = DEFAULT_REMOTE_MODEL) -> None:
        self.model_name = model
        self._client = genai.Client(api_key=api_key)

    async def generate(self, parts: list[dict[str, Any]], *, stream: bool = False) -> str:
        contents = [types.Content(role="user", parts=[_to_genai_part(part) for part in parts])]

        if not stream:
            response = await self._client.aio.models.generate_content(
                model=self.model_name,
                contents=contents,
            )
            return response.text or ""

        output: list[str] = []
        async for chunk in await self._client.aio.models.generate_content_stream(
            model=self.model_name,
            contents=contents,
        ):
            if chunk.text:
                output.append(chunk.text)
        logger.debug("Collected %d streamed chunks from %s", len(output), self.model_name)
        return "".join(output)


def _to_genai_part(part: dict[str, Any]) -> types.Part:
    inline = part.get("inline_data")
    if inline is None:
        return types.Part.from_text(text=part.get("text") or "")

    return types.Part.from_bytes(
        data=base64.b64decode(inline["data"]),
        mime_type=inline["mime_type"],
    )
