from typing import TypedDict, List, Dict, Any, Optional, Sequence
import base64
import time
from langgraph.graph import StateGraph, END
from langchain_core.messages import BaseMessage
from pydantic import BaseModel, ConfigDict, Field
import structlog

from zetra_ai.domain.context.memory.conversation_memory_store import (
    ConversationMemoryStore, conversation_key
)
from zetra_ai.domain.context.message_packer import MessagePacker, PackedMessage
from zetra_ai.domain.errors import (
    DispatchError, EmptyMessageError, MessageTooLongError, ReplyCancelledError
)
from zetra_ai.domain.models.copilot_state import (
    AiMeta, AiMode, AskContext, AttachedImage, CopilotReply, RequestKind,
    TaskBridgeReport, clean
)
from zetra_ai.domain.models.dispatch_result import DispatchFailure, DispatchSuccess
from zetra_ai.domain.parsing.assistant_text import pack_assistant_text, task_footer
from zetra_ai.domain.parsing.structured_output import parse_structured_output
from zetra_ai.domain.streaming.pacing import PartialCallback, TypingPacer, emit
from zetra_ai.domain.streaming.stream_decoder import StreamDecoder
from zetra_ai.domain.tool.task_bridge import TaskBridge
from zetra_ai.infrastructure.config.settings import CopilotSettings
from zetra_ai.infrastructure.observability.logging import metrics
from zetra_ai.infrastructure.transport.dispatcher import TransportDispatcher

logger = structlog.get_logger(__name__)

EMPTY_REPLY_BODY = "AI returned an empty reply"


class ReplyRequest(BaseModel):
    """One user turn entering the reply pipeline"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: RequestKind = RequestKind.CHAT
    message: str
    mode: AiMode = AiMode.AUTO
    history: List[BaseMessage] = Field(default_factory=list)
    context: AskContext = Field(default_factory=AskContext)
    images: List[AttachedImage] = Field(default_factory=list)


class _ReplyRun:
    def __init__(self, tag: str):
        self.tag = tag
        self.aborted = False


class ReplyState(TypedDict, total=False):
    """State for the reply graph"""
    request: ReplyRequest
    on_partial: Optional[PartialCallback]
    run: _ReplyRun
    conversation_key: str
    packed: PackedMessage
    raw_text: str
    streamed: bool
    fell_back: bool
    failure: Optional[DispatchFailure]
    cancelled: bool
    meta: AiMeta
    task_report: Optional[TaskBridgeReport]
    display_text: str


def empty_reply_failure(kind: RequestKind, tag: str, status: int, attempts: int) -> DispatchFailure:
    return DispatchFailure(
        kind=kind,
        tag=tag,
        status=status,
        body=EMPTY_REPLY_BODY,
        attempts=attempts,
        retryable=False,
    )


def extract_image_refs(body: Dict[str, Any]) -> List[str]:
    """Image references (URLs or data URIs) from an image-generation body"""

    refs = []
    candidates = body.get("images")
    if not isinstance(candidates, list):
        candidates = [body.get("url") or body.get("image")]

    for item in candidates:
        if isinstance(item, dict):
            if clean(item.get("url")):
                refs.append(clean(item.get("url")))
            elif clean(item.get("b64_json")):
                refs.append(f"data:image/png;base64,{clean(item.get('b64_json'))}")
        elif clean(item):
            refs.append(clean(item))
    return refs


class ReplyOrchestrator:
    """Reply pipeline for one chat surface, built on LangGraph"""

    def __init__(
        self,
        settings: CopilotSettings,
        dispatcher: TransportDispatcher,
        memory_store: ConversationMemoryStore,
        pacer: TypingPacer,
        decoder: Optional[StreamDecoder] = None,
        task_bridge: Optional[TaskBridge] = None,
        packer: Optional[MessagePacker] = None,
    ):
        self.settings = settings
        self.dispatcher = dispatcher
        self.memory_store = memory_store
        self.pacer = pacer
        self.decoder = decoder or StreamDecoder(dispatcher.client, dispatcher, pacer, settings)
        self.task_bridge = task_bridge or TaskBridge()
        self.packer = packer or MessagePacker(
            memory_store,
            history_limit=settings.history_limit,
            history_turn_chars=settings.history_turn_chars,
        )
        self._active: Optional[_ReplyRun] = None
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the reply graph"""

        workflow = StateGraph(ReplyState)

        workflow.add_node("pack", self.pack_node)
        workflow.add_node("transmit", self.transmit_node)
        workflow.add_node("parse", self.parse_node)
        workflow.add_node("remember", self.remember_node)
        workflow.add_node("reveal", self.reveal_node)

        workflow.set_entry_point("pack")
        workflow.add_edge("pack", "transmit")

        workflow.add_conditional_edges(
            "transmit",
            self.route_after_transmit,
            {
                "parse": "parse",
                "failed": END,
                "cancelled": END,
            }
        )

        workflow.add_edge("parse", "remember")
        workflow.add_edge("remember", "reveal")
        workflow.add_edge("reveal", END)

        return workflow.compile()

    async def pack_node(self, state: ReplyState) -> Dict[str, Any]:
        """Hydrate memory and build the outbound instruction block"""

        request = state["request"]
        key = conversation_key(request.context)
        await self.memory_store.hydrate(key)

        packed = self.packer.pack(
            request.message,
            mode=request.mode,
            history=request.history,
            context=request.context,
        )
        return {"conversation_key": key, "packed": packed}

    async def transmit_node(self, state: ReplyState) -> Dict[str, Any]:
        """Send the packed request, streaming chat replies when enabled"""

        request = state["request"]
        run = state["run"]
        payload: Dict[str, Any] = {"message": state["packed"].text}

        if request.kind == RequestKind.VISION:
            payload["images"] = [
                {"id": image.id, "data": image.embedded_data} for image in request.images
            ]

        if request.kind == RequestKind.CHAT and self.settings.streaming_enabled:
            decoded = await self.decoder.run(payload, state.get("on_partial"), tag=run.tag)
            if decoded.cancelled or run.aborted:
                return {"cancelled": True}
            if decoded.failure is not None:
                return {"failure": decoded.failure, "fell_back": decoded.fell_back}
            if not decoded.raw_text:
                failure = empty_reply_failure(request.kind, run.tag, 200, 1)
                return {"failure": failure, "fell_back": decoded.fell_back}
            return {
                "raw_text": decoded.raw_text,
                "streamed": decoded.streamed,
                "fell_back": decoded.fell_back,
            }

        result = await self.dispatcher.send(request.kind, payload, tag=run.tag)
        # a stopped run reports cancellation even if its request failed
        if run.aborted:
            return {"cancelled": True}
        if isinstance(result, DispatchFailure):
            return {"failure": result}

        raw = result.reply_text()
        if not raw:
            return {"failure": empty_reply_failure(request.kind, run.tag, result.status, result.attempts)}
        return {"raw_text": raw}

    def route_after_transmit(self, state: ReplyState) -> str:
        if state.get("failure") is not None:
            return "failed"
        if state.get("cancelled"):
            return "cancelled"
        return "parse"

    async def parse_node(self, state: ReplyState) -> Dict[str, Any]:
        meta = parse_structured_output(state["raw_text"])
        logger.debug(
            "Parsed reply",
            actions=len(meta.actions),
            lang=meta.lang.value if meta.lang else None,
            has_memory=meta.memory is not None,
        )
        return {"meta": meta}

    async def remember_node(self, state: ReplyState) -> Dict[str, Any]:
        """Fold the reply into memory and save actions as tasks"""

        if state["run"].aborted:
            return {"cancelled": True}

        meta = state["meta"]
        await self.memory_store.remember_reply(state["conversation_key"], meta)
        report = await self.task_bridge.save(meta.actions, state["request"].context)
        return {"task_report": report}

    async def reveal_node(self, state: ReplyState) -> Dict[str, Any]:
        """Render the final display text and reveal it to the caller"""

        display_text = pack_assistant_text(state["meta"], task_footer(state.get("task_report")))
        on_partial = state.get("on_partial")

        if state.get("cancelled") or on_partial is None:
            return {"display_text": display_text}

        if state.get("streamed") or state.get("fell_back"):
            # the reply prefix is already on screen
            await emit(on_partial, display_text)
        else:
            # a stopped reveal leaves the remembered reply intact
            await self.pacer.run(display_text, on_partial)

        return {"display_text": display_text}

    def stop(self) -> None:
        """Cancel pacing and stream decoding of the active reply"""

        if self._active is not None:
            self._active.aborted = True
            logger.info("Reply stopped", tag=self._active.tag)
        self.decoder.stop()
        self.pacer.stop()

    def validate_message(self, message: str) -> str:
        text = clean(message)
        if not text:
            raise EmptyMessageError()
        if len(text) > self.settings.max_message_chars:
            raise MessageTooLongError(len(text), self.settings.max_message_chars)
        return text

    async def ask(
        self,
        message: str,
        mode: AiMode = AiMode.AUTO,
        history: Optional[Sequence[BaseMessage]] = None,
        context: Optional[AskContext] = None,
        on_partial: Optional[PartialCallback] = None,
    ) -> CopilotReply:
        """Answer one chat message"""

        request = ReplyRequest(
            kind=RequestKind.CHAT,
            message=self.validate_message(message),
            mode=mode,
            history=list(history or []),
            context=context or AskContext(),
        )
        return await self._execute(request, on_partial)

    async def ask_vision(
        self,
        message: str,
        images: Sequence[AttachedImage],
        mode: AiMode = AiMode.AUTO,
        history: Optional[Sequence[BaseMessage]] = None,
        context: Optional[AskContext] = None,
        on_partial: Optional[PartialCallback] = None,
    ) -> CopilotReply:
        """Answer a message about attached images"""

        request = ReplyRequest(
            kind=RequestKind.VISION,
            message=self.validate_message(message),
            mode=mode,
            history=list(history or []),
            context=context or AskContext(),
            images=list(images),
        )
        return await self._execute(request, on_partial)

    async def _execute(
        self,
        request: ReplyRequest,
        on_partial: Optional[PartialCallback],
    ) -> CopilotReply:
        self.stop()
        run = _ReplyRun(request.kind.value)
        self._active = run
        started = time.perf_counter()
        key = conversation_key(request.context)

        try:
            with structlog.contextvars.bound_contextvars(conversation_key=key):
                logger.info("Reply started", kind=request.kind.value, history=len(request.history))
                state = await self.workflow.ainvoke({
                    "request": request,
                    "on_partial": on_partial,
                    "run": run,
                    "conversation_key": key,
                    "raw_text": "",
                    "streamed": False,
                    "fell_back": False,
                    "failure": None,
                    "cancelled": False,
                    "task_report": None,
                    "display_text": "",
                })
        finally:
            if self._active is run:
                self._active = None

        metrics.record_latency(
            f"reply.{request.kind.value}",
            round((time.perf_counter() - started) * 1000, 1),
        )

        if state.get("cancelled"):
            metrics.increment_counter("reply.cancelled")
            raise ReplyCancelledError(run.tag)

        failure = state.get("failure")
        if failure is not None:
            metrics.increment_counter("reply.failures", tags={"kind": request.kind.value})
            raise DispatchError(failure)

        if "meta" not in state:
            raise ReplyCancelledError(run.tag)

        logger.info(
            "Reply completed",
            conversation_key=key,
            streamed=state.get("streamed", False),
            fell_back=state.get("fell_back", False),
            actions=len(state["meta"].actions),
        )

        return CopilotReply(
            meta=state["meta"],
            display_text=state["display_text"],
            streamed=state.get("streamed", False),
            fell_back=state.get("fell_back", False),
            task_report=state.get("task_report"),
        )

    async def generate_image(self, prompt: str) -> List[str]:
        """Generate images for a prompt; returns image references"""

        prompt = self.validate_message(prompt)
        result = await self.dispatcher.send(RequestKind.IMAGE, {"prompt": prompt})
        if isinstance(result, DispatchFailure):
            raise DispatchError(result)

        refs = extract_image_refs(result.body)
        if not refs:
            raise DispatchError(
                empty_reply_failure(RequestKind.IMAGE, result.tag, result.status, result.attempts)
            )
        return refs

    async def transcribe(self, audio: bytes, mime_type: str = "audio/m4a") -> str:
        """Transcribe recorded audio to text"""

        if not audio:
            raise EmptyMessageError()

        payload = {
            "audio": base64.b64encode(audio).decode("ascii"),
            "mimeType": mime_type,
        }
        result = await self.dispatcher.send(RequestKind.TRANSCRIBE, payload)
        if isinstance(result, DispatchFailure):
            raise DispatchError(result)
        return self._transcript(result)

    @staticmethod
    def _transcript(result: DispatchSuccess) -> str:
        for key in ("text", "transcript", "raw"):
            value = clean(result.body.get(key))
            if value:
                return value
        return ""

    async def clear_memory(self, context: Optional[AskContext] = None) -> None:
        """Forget conversation memory for a context"""
        await self.memory_store.clear(conversation_key(context))
