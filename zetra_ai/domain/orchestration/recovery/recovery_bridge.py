from typing import TYPE_CHECKING, List, Optional, Union
from enum import Enum
import structlog

from zetra_ai.domain.errors import DispatchError, NothingToRetryError, ReplyCancelledError
from zetra_ai.domain.models.copilot_state import (
    AiMode, AskContext, ChatRetryPayload, CopilotReply, ImageRetryPayload,
    RetryPayload, VisionRetryPayload
)
from zetra_ai.domain.streaming.pacing import PartialCallback

if TYPE_CHECKING:
    from zetra_ai.domain.orchestration.core.reply_orchestrator import ReplyOrchestrator

logger = structlog.get_logger(__name__)

BridgeResult = Union[CopilotReply, List[str]]


class BridgeState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    SUCCESS = "success"
    FAILED = "failed"


def describe_payload(payload: RetryPayload) -> str:
    """Human-readable label for a retained request"""

    if isinstance(payload, ImageRetryPayload):
        return f"Retry image: {payload.prompt[:60]}"
    if isinstance(payload, VisionRetryPayload):
        count = len(payload.images)
        noun = "image" if count == 1 else "images"
        return f"Retry message with {count} {noun}: {payload.text[:60]}"
    return f"Retry message: {payload.text[:60]}"


class RecoveryBridge:
    """
    Keeps the last attempted request so a failed one can be resubmitted
    exactly as it was sent.

    Only one payload is retained. A new submit replaces it before the
    result is known; a successful completion clears it.
    """

    def __init__(
        self,
        orchestrator: "ReplyOrchestrator",
        mode: AiMode = AiMode.AUTO,
        context: Optional[AskContext] = None,
    ):
        self.orchestrator = orchestrator
        self.mode = mode
        self.context = context
        self.state = BridgeState.IDLE
        self.payload: Optional[RetryPayload] = None
        self.last_error: Optional[str] = None

    @property
    def can_retry(self) -> bool:
        return self.payload is not None and self.state != BridgeState.SENDING

    @property
    def retry_label(self) -> Optional[str]:
        if self.state != BridgeState.FAILED or self.payload is None:
            return None
        return describe_payload(self.payload)

    async def submit(
        self,
        payload: RetryPayload,
        on_partial: Optional[PartialCallback] = None,
    ) -> BridgeResult:
        """Send a new request, replacing any retained payload"""

        self.payload = payload
        return await self._run(payload, on_partial)

    async def retry(self, on_partial: Optional[PartialCallback] = None) -> BridgeResult:
        """Resubmit the retained payload verbatim"""

        if self.payload is None:
            raise NothingToRetryError()
        logger.info("Retrying last request", kind=self.payload.kind.value)
        return await self._run(self.payload, on_partial)

    async def _run(
        self,
        payload: RetryPayload,
        on_partial: Optional[PartialCallback],
    ) -> BridgeResult:
        self.state = BridgeState.SENDING
        self.last_error = None

        try:
            result = await self._dispatch(payload, on_partial)
        except ReplyCancelledError:
            # a superseded run leaves the newer send's state alone
            if self.payload is payload:
                self.state = BridgeState.IDLE
            raise
        except ValueError:
            # rejected input is dropped, not retained
            self.state = BridgeState.IDLE
            self.payload = None
            raise
        except DispatchError as e:
            self.state = BridgeState.FAILED
            self.last_error = str(e)
            logger.warning(
                "Request failed, payload retained for retry",
                kind=payload.kind.value,
                label=self.retry_label,
                error=str(e),
            )
            raise

        self.state = BridgeState.SUCCESS
        if self.payload is payload:
            self.payload = None
        self.state = BridgeState.IDLE
        return result

    async def _dispatch(
        self,
        payload: RetryPayload,
        on_partial: Optional[PartialCallback],
    ) -> BridgeResult:
        if isinstance(payload, ImageRetryPayload):
            return await self.orchestrator.generate_image(payload.prompt)

        if isinstance(payload, VisionRetryPayload):
            return await self.orchestrator.ask_vision(
                payload.text,
                payload.images,
                mode=self.mode,
                history=payload.history,
                context=self.context,
                on_partial=on_partial,
            )

        if isinstance(payload, ChatRetryPayload):
            return await self.orchestrator.ask(
                payload.text,
                mode=self.mode,
                history=payload.history,
                context=self.context,
                on_partial=on_partial,
            )

        raise TypeError(f"Unsupported retry payload: {type(payload).__name__}")
