"""Remote side of the bridge.

Receives ``INVOKE`` envelopes and answers them with a full-capability remote
model. Schemas are not passed to the remote model as constraints; they become
a short JSON instruction appended to the prompt, and the output is cleaned
before it is returned.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

from .envelopes import InvokeEnvelope, InvokePayload, ResultEnvelope

if TYPE_CHECKING:
    from hybrid_llm.providers.base import RemoteModel

logger = logging.getLogger(__name__)

DEFAULT_MAX_PROMPT_CHARS = 30_000
DEFAULT_MAX_REMOTE_PROPERTIES = 8

_SCHEMA_RESERVE_CHARS = 200
_KEEP_FRACTION = 0.3
_MIN_TRUNCATION_BUDGET = 1000
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\}|\[[\s\S]*?\])\s*```")


def limit_remote_schema(schema: Any, max_properties: int = DEFAULT_MAX_REMOTE_PROPERTIES) -> Any:
    if not isinstance(schema, dict):
        return schema

    properties = schema.get("properties")
    if schema.get("type") == "object" and isinstance(properties, dict):
        if len(properties) > max_properties:
            logger.info("Limiting remote schema from %d to %d properties", len(properties), max_properties)
            kept = dict(list(properties.items())[:max_properties])
            return {
                **schema,
                "properties": kept,
                "required": [name for name in schema.get("required") or () if name in kept],
            }

    if isinstance(properties, dict):
        return {
            **schema,
            "properties": {
                key: limit_remote_schema(value, max_properties) for key, value in properties.items()
            },
        }

    if schema.get("type") == "array" and isinstance(schema.get("items"), dict):
        return {**schema, "items": limit_remote_schema(schema["items"], max_properties)}

    return schema


def describe_schema(schema: Any) -> str:
    if not isinstance(schema, dict):
        return "The response should be a valid JSON object."

    properties = schema.get("properties")
    if schema.get("type") == "object" and isinstance(properties, dict):
        required = set(schema.get("required") or ())
        fields = ", ".join(
            f'"{name}": {_type_description(value)} '
            f"({'required' if name in required else 'optional'})"
            for name, value in properties.items()
        )
        return (
            f"The response must be a JSON object with: {{{fields}}}. "
            "All string values must be properly escaped."
        )

    if schema.get("type") == "array":
        item_type = _type_description(schema.get("items"))
        return f"The response must be a JSON array of {item_type}."

    return "The response should be a valid JSON object."


def truncate_prompt(
    prompt: str,
    *,
    system: str | None,
    reserved: int,
    max_chars: int = DEFAULT_MAX_PROMPT_CHARS,
) -> str:
    """Cut the middle of an oversized prompt, keeping its beginning and end."""

    total = len(system or "") + len(prompt) + reserved
    if total <= max_chars:
        return prompt

    available = max_chars - len(system or "") - reserved - _SCHEMA_RESERVE_CHARS
    if available <= _MIN_TRUNCATION_BUDGET:
        logger.error("Prompt is still too large after reserving space (%d chars)", total)
        return prompt

    keep = int(available * _KEEP_FRACTION)
    dropped = len(prompt) - 2 * keep
    logger.warning("Prompt too large (%d chars), truncating %d characters", total, dropped)
    return (
        f"{prompt[:keep]}\n\n[... {dropped} characters truncated ...]\n\n{prompt[len(prompt) - keep:]}"
    )


def clean_json_text(text: str) -> str:
    fenced = _FENCED_JSON.search(text)
    if fenced:
        text = fenced.group(1)

    text = text.strip()
    if not text.startswith(("{", "[")):
        start = re.search(r"[\{\[]", text)
        if start:
            text = text[start.start():]

    if _is_json(text):
        return text

    if "}{" in text:
        first = text[: text.index("}{") + 1]
        if _is_json(first):
            return first

    if not text.endswith(("}", "]")):
        last = max(text.rfind("}"), text.rfind("]"))
        if last > 0 and _is_json(text[: last + 1]):
            return text[: last + 1]

    logger.warning("Remote output is not valid JSON after cleanup (%d chars)", len(text))
    return text


class BridgeHandler:
    def __init__(
        self,
        model: RemoteModel,
        *,
        max_prompt_chars: int = DEFAULT_MAX_PROMPT_CHARS,
        max_remote_properties: int = DEFAULT_MAX_REMOTE_PROPERTIES,
    ) -> None:
        self._model = model
        self._max_prompt_chars = max_prompt_chars
        self._max_remote_properties = max_remote_properties

    async def handle(self, envelope: InvokeEnvelope) -> ResultEnvelope:
        payload = envelope.payload
        try:
            parts = self.build_parts(payload)
            text = await self._model.generate(parts, stream=payload.stream)
        except Exception as exc:
            logger.exception("Remote generation failed")
            return ResultEnvelope(ok=False, error=str(exc) or type(exc).__name__)

        if payload.json_schema is not None:
            text = clean_json_text(text)

        logger.info("Remote generation finished (%d chars)", len(text))
        return ResultEnvelope(ok=True, text=text, model=self._model.model_name)

    def build_parts(self, payload: InvokePayload) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        if payload.system:
            parts.append({"text": payload.system})

        instruction = ""
        if payload.json_schema is not None:
            limited = limit_remote_schema(payload.json_schema, self._max_remote_properties)
            instruction = (
                f"You MUST respond with ONLY valid JSON. {describe_schema(limited)}\n\n"
                "Respond with valid JSON only:"
            )

        if payload.prompt is not None:
            prompt = truncate_prompt(
                payload.prompt,
                system=payload.system,
                reserved=len(instruction),
                max_chars=self._max_prompt_chars,
            )
            parts.append({"text": f"{prompt}\n\n{instruction}" if instruction else prompt})
            return parts

        for part in payload.content or ():
            parts.append(part.model_dump(exclude_none=True))
        if instruction:
            parts.append({"text": instruction})
        return parts


def _type_description(schema: Any) -> str:
    if not isinstance(schema, dict) or "type" not in schema:
        return "any"
    if schema["type"] == "array":
        return f"array of {_type_description(schema.get('items'))}"
    return str(schema["type"])


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True
