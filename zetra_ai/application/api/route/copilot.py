from typing import Annotated, Any, Dict
from fastapi import APIRouter, Depends, HTTPException
import structlog

from zetra_ai.application.copilot_service import CopilotService, get_copilot_service
from zetra_ai.application.websocket.schema.events import ChatRequest, to_messages
from zetra_ai.domain.errors import DispatchError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/copilot")


# REST endpoint for simple interactions
@router.post("/chat")
async def chat_endpoint(
    request: ChatRequest,
    service: Annotated[CopilotService, Depends(get_copilot_service)]
) -> Dict[str, Any]:
    try:
        reply = await service.ask(
            request.message,
            mode=request.mode,
            history=to_messages(request.history),
            context=request.context,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except DispatchError as e:
        logger.warning("Chat request failed", error=str(e), status=e.failure.status)
        raise HTTPException(
            status_code=502,
            detail={
                "message": e.failure.message,
                "status": e.failure.status,
                "retryable": e.retryable,
            }
        )

    return reply.model_dump(mode="json", by_alias=True, exclude_none=True)


@router.delete("/memory/{org_id}")
async def clear_memory_endpoint(
    org_id: str,
    service: Annotated[CopilotService, Depends(get_copilot_service)]
) -> Dict[str, str]:
    await service.clear_memory(org_id)
    return {"status": "cleared", "org_id": org_id}
