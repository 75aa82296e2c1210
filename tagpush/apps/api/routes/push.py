from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tagpush.apps.api.deps import get_orchestrator, require_api_key
from tagpush.services.dispatch.orchestrator import DispatchOrchestrator


router = APIRouter(tags=["push"], dependencies=[Depends(require_api_key)])


class SendRequest(BaseModel):
    # Shapes are checked by the orchestrator so its messages reach the client unchanged.
    tags: Any = None
    locales_content: Any = Field(default=None, alias="localesContent")
    metadata: Any = None


class SendResponse(BaseModel):
    message: str
    totalUsers: int
    jobsAdded: int
    locales: list[str]


@router.post("/send", response_model=SendResponse)
async def send_push(
    payload: SendRequest,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.dispatch(payload.tags, payload.locales_content, payload.metadata)
    return result.to_response()
