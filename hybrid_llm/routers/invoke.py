from __future__ import annotations

import json
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse

from hybrid_llm.api.schemas import InvokeRequestBody, PreferenceBody
from hybrid_llm.core.client import HybridClient, InvokeStream
from hybrid_llm.core.errors import HybridLLMError
from hybrid_llm.dependencies import get_client

router = APIRouter(prefix="/v1", tags=["invoke"])


@router.post("/invoke")
async def invoke(payload: InvokeRequestBody, client: HybridClient = Depends(get_client)):
    request = payload.to_request()

    if payload.stream:
        stream = await client.stream(request)
        return StreamingResponse(
            _sse_events(stream),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Hybrid-Provider": stream.provider.value},
        )

    response = await client.invoke(request)
    return JSONResponse(content=response.to_dict())


@router.get("/status")
async def status(client: HybridClient = Depends(get_client)) -> dict[str, Any]:
    await client.availability()
    return client.status().to_dict()


@router.put("/preference")
async def set_preference(
    payload: PreferenceBody,
    client: HybridClient = Depends(get_client),
) -> dict[str, str]:
    effective = client.set_preference(payload.provider)
    return {"preference": effective.value}


async def _sse_events(stream: InvokeStream) -> AsyncIterator[bytes]:
    try:
        async for delta in stream:
            yield _sse_data({"delta": delta})

        yield _sse_data(
            {
                "provider": stream.provider.value,
                "metadata": {
                    "model": stream.metadata.model,
                    "latencyMs": round(stream.metadata.latency_ms, 3),
                    "fallbackReason": stream.metadata.fallback_reason,
                },
            }
        )
    except HybridLLMError as exc:
        yield _sse_data({"error": exc.to_error()})

    yield b"data: [DONE]\n\n"


def _sse_data(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")
