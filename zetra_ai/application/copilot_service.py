from typing import Dict, List, Optional
from datetime import timedelta
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
import httpx
import structlog

from zetra_ai.domain.context.memory.conversation_memory_store import ConversationMemoryStore
from zetra_ai.domain.models.copilot_state import AiMode, AskContext
from zetra_ai.domain.orchestration.core.reply_orchestrator import ReplyOrchestrator
from zetra_ai.domain.orchestration.recovery.recovery_bridge import RecoveryBridge
from zetra_ai.domain.streaming.pacing import TypingPacer
from zetra_ai.domain.tool.task_bridge import RpcTaskSink, TaskBridge
from zetra_ai.infrastructure.config.settings import CopilotSettings
from zetra_ai.infrastructure.storage.durable_store import (
    DurableStore, InMemoryDurableStore, JsonFileDurableStore
)
from zetra_ai.infrastructure.transport.dispatcher import TransportDispatcher

logger = structlog.get_logger(__name__)


class CopilotSession:
    """Per-connection chat surface: its own orchestrator, bridge and history"""

    def __init__(self, session_id: str, orchestrator: ReplyOrchestrator, context: AskContext):
        self.session_id = session_id
        self.orchestrator = orchestrator
        self.bridge = RecoveryBridge(orchestrator, context=context)
        self.history: List[BaseMessage] = []

    def record_turn(self, user_text: str, reply_text: str) -> None:
        self.history.append(HumanMessage(content=user_text))
        self.history.append(AIMessage(content=reply_text))


class CopilotService:
    """Shared transport and memory behind every chat surface of the app"""

    def __init__(
        self,
        settings: CopilotSettings,
        client: Optional[httpx.AsyncClient] = None,
        durable: Optional[DurableStore] = None,
    ):
        self.settings = settings
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()

        if durable is None:
            durable = (
                JsonFileDurableStore(settings.memory_dir)
                if settings.memory_dir
                else InMemoryDurableStore()
            )

        self.memory_store = ConversationMemoryStore(
            durable, ttl=timedelta(seconds=settings.memory_ttl_seconds)
        )
        self.dispatcher = TransportDispatcher(self.client, settings)

        sink = None
        if settings.task_rpc_url:
            sink = RpcTaskSink(self.client, settings.task_rpc_url, settings.task_rpc_key)
        self.task_bridge = TaskBridge(sink, enabled=settings.task_autosave)

        self.sessions: Dict[str, CopilotSession] = {}

    def create_orchestrator(self) -> ReplyOrchestrator:
        """A fresh chat surface over the shared collaborators"""
        return ReplyOrchestrator(
            settings=self.settings,
            dispatcher=self.dispatcher,
            memory_store=self.memory_store,
            pacer=TypingPacer(),
            task_bridge=self.task_bridge,
        )

    def open_session(self, session_id: str, org_id: str) -> CopilotSession:
        session = self.sessions.get(session_id)
        if session is None:
            context = AskContext(org_id=org_id)
            session = CopilotSession(session_id, self.create_orchestrator(), context)
            self.sessions[session_id] = session
        return session

    def close_session(self, session_id: str) -> None:
        session = self.sessions.pop(session_id, None)
        if session is not None:
            session.orchestrator.stop()

    async def ask(
        self,
        message: str,
        mode: AiMode = AiMode.AUTO,
        history: Optional[List[BaseMessage]] = None,
        context: Optional[AskContext] = None,
    ):
        """One-shot reply without a live reveal"""
        return await self.create_orchestrator().ask(message, mode=mode, history=history, context=context)

    async def clear_memory(self, org_id: str) -> None:
        await self.create_orchestrator().clear_memory(AskContext(org_id=org_id))

    async def aclose(self) -> None:
        for session_id in list(self.sessions):
            self.close_session(session_id)
        await self.memory_store.flush()
        if self._owns_client:
            await self.client.aclose()


_service: Optional[CopilotService] = None


def get_copilot_service() -> CopilotService:
    """FastAPI dependency returning the process-wide service"""
    global _service
    if _service is None:
        _service = CopilotService(CopilotSettings.from_env())
    return _service


async def shutdown_copilot_service() -> None:
    global _service
    if _service is not None:
        await _service.aclose()
        _service = None
