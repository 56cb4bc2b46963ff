from __future__ import annotations

from fastapi import APIRouter, Depends

from hybrid_llm.bridge.envelopes import InvokeEnvelope, ResultEnvelope
from hybrid_llm.bridge.handler import BridgeHandler
from hybrid_llm.dependencies import get_bridge_handler

router = APIRouter(prefix="/v1", tags=["bridge"])


@router.post("/bridge")
async def bridge(
    envelope: InvokeEnvelope,
    handler: BridgeHandler | None = Depends(get_bridge_handler),
) -> dict:
    if handler is None:
        result = ResultEnvelope(ok=False, error="Remote model is not configured on this bridge.")
    else:
        result = await handler.handle(envelope)
    return result.model_dump(exclude_none=True)
