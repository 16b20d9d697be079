from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Depends
from fastapi.middleware.cors import CORSMiddleware
from typing import Annotated, Any, Awaitable, Callable, Dict, Optional
import asyncio
import uuid
from pydantic import ValidationError
import structlog

from zetra_ai.application.api.route.copilot import router as copilot_router
from zetra_ai.application.copilot_service import (
    CopilotService, CopilotSession, get_copilot_service, shutdown_copilot_service
)
from zetra_ai.application.websocket.connection_manager import ConnectionManager
from zetra_ai.application.websocket.schema.events import (
    EventType, MarkdownEvent, ReplyEvent, UserMessage
)
from zetra_ai.domain.errors import (
    CopilotError, DispatchError, NothingToRetryError, ReplyCancelledError
)
from zetra_ai.domain.models.copilot_state import (
    AskContext, ChatRetryPayload, CopilotReply, VisionRetryPayload, utcnow
)
from zetra_ai.domain.streaming.pacing import PartialCallback
from zetra_ai.infrastructure.config.settings import CopilotSettings
from zetra_ai.infrastructure.observability.logging import metrics, setup_logging

_settings = CopilotSettings.from_env()
setup_logging(log_level=_settings.log_level, log_format=_settings.log_format)
logger = structlog.get_logger(__name__)

app = FastAPI(title="ZETRA Copilot Server")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(copilot_router)

# Global connection manager
connection_manager = ConnectionManager()

_reply_tasks: Dict[str, asyncio.Task] = {}
_background_tasks = set()

ReplyStarter = Callable[[PartialCallback], Awaitable[Any]]


@app.on_event("startup")
async def startup_event():
    """Start background tasks"""
    task = asyncio.create_task(connection_manager.health_check())
    _background_tasks.add(task)
    logger.info("Copilot server started")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    for task in list(_background_tasks) + list(_reply_tasks.values()):
        task.cancel()

    sessions = list(connection_manager.sessions)
    for session_id in sessions:
        await connection_manager.disconnect(session_id)

    await shutdown_copilot_service()
    logger.info("Copilot server shutdown")


def session_context(org_id: str, message: UserMessage) -> AskContext:
    """Client-supplied context, scoped to the connection's organization"""
    context = message.context or AskContext()
    if context.org_id:
        return context
    return AskContext(**{**context.model_dump(), "org_id": org_id})


@app.websocket("/ws/copilot/{org_id}/{session_id}")
async def copilot_websocket(
    websocket: WebSocket,
    org_id: str,
    session_id: str,
    service: Annotated[CopilotService, Depends(get_copilot_service)],
):
    """Main WebSocket endpoint for copilot chat"""

    try:
        uuid.UUID(session_id)
    except ValueError:
        await websocket.close(code=1008, reason="Invalid session ID format")
        return

    await connection_manager.connect(websocket, session_id, org_id)
    session = service.open_session(session_id, org_id)

    try:
        while True:
            data = await websocket.receive_json()

            try:
                event_type = data.get("type")

                if event_type == EventType.USER_MESSAGE:
                    message = UserMessage(**data)
                    start_reply(session, submit_message(session, org_id, message), message.content)

                elif event_type == EventType.RETRY:
                    start_reply(session, retry_last(session), getattr(session.bridge.payload, "text", ""))

                elif event_type == EventType.STOP:
                    session.orchestrator.stop()

                else:
                    await connection_manager.send_error(
                        session_id, f"Unsupported event type: {event_type}", "unsupported_event"
                    )

            except ValidationError as e:
                await connection_manager.send_error(session_id, f"Invalid message: {e}", "invalid_message")
            except NothingToRetryError as e:
                await connection_manager.send_error(session_id, str(e), "nothing_to_retry")

    except WebSocketDisconnect:
        logger.info("Client disconnected", session_id=session_id)
    except Exception as e:
        logger.error("WebSocket error", error=str(e), session_id=session_id)
    finally:
        task = _reply_tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
        service.close_session(session_id)
        await connection_manager.disconnect(session_id)


def submit_message(session: CopilotSession, org_id: str, message: UserMessage) -> ReplyStarter:
    """Build the send for a new user message"""

    session.bridge.mode = message.mode
    session.bridge.context = session_context(org_id, message)
    history = list(session.history)

    if message.attachments:
        payload = VisionRetryPayload(text=message.content, history=history, images=message.attachments)
    else:
        payload = ChatRetryPayload(text=message.content, history=history)

    async def start(on_partial: PartialCallback):
        return await session.bridge.submit(payload, on_partial)

    return start


def retry_last(session: CopilotSession) -> ReplyStarter:
    """Build the resend of the retained payload"""

    if session.bridge.payload is None:
        raise NothingToRetryError()

    async def start(on_partial: PartialCallback):
        return await session.bridge.retry(on_partial)

    return start


def start_reply(session: CopilotSession, start: ReplyStarter, user_text: str) -> None:
    """Run a reply in the background so stop events keep flowing"""

    session.orchestrator.stop()
    task = asyncio.create_task(process_reply(session, start, user_text))
    _reply_tasks[session.session_id] = task
    task.add_done_callback(
        lambda t: _reply_tasks.pop(session.session_id, None) if _reply_tasks.get(session.session_id) is t else None
    )


async def process_reply(session: CopilotSession, start: ReplyStarter, user_text: str):
    """Drive one reply through the recovery bridge and report it"""

    session_id = session.session_id

    async def on_partial(text: str):
        await connection_manager.send_event(session_id, MarkdownEvent(payload=text))

    started = utcnow()
    try:
        with structlog.contextvars.bound_contextvars(session_id=session_id):
            reply: CopilotReply = await start(on_partial)

    except ReplyCancelledError:
        logger.info("Reply cancelled", session_id=session_id)
        return
    except DispatchError as e:
        await connection_manager.send_error(
            session_id,
            str(e),
            "dispatch_failed",
            retry_label=session.bridge.retry_label,
        )
        return
    except CopilotError as e:
        await connection_manager.send_error(session_id, str(e), "invalid_request")
        return
    except Exception as e:
        logger.error("Error in reply processing", error=str(e), session_id=session_id, exc_info=True)
        await connection_manager.send_error(session_id, str(e), "internal_error")
        return

    session.record_turn(user_text, reply.display_text)
    await connection_manager.send_event(session_id, ReplyEvent.create(reply, session_id))
    metrics.record_latency("ws.reply", (utcnow() - started).total_seconds() * 1000)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "active_connections": len(connection_manager.sessions),
        "metrics": metrics.get_metrics_summary(),
        "timestamp": utcnow().isoformat()
    }


def main(host: Optional[str] = None, port: int = 8000):
    import uvicorn
    uvicorn.run(app, host=host or "0.0.0.0", port=port)


if __name__ == "__main__":
    main()
