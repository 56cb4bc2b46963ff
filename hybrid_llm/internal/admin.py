from __future__ import annotations

from fastapi import APIRouter, Depends

from hybrid_llm.core.client import HybridClient
from hybrid_llm.dependencies import get_client

router = APIRouter(prefix="/internal", tags=["internal"])


@router.get("/healthz")
async def healthz(client: HybridClient = Depends(get_client)) -> dict[str, str]:
    status = client.status()
    return {"status": "ok", "session": status.session_state.value}
