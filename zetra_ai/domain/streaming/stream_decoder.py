from typing import Any, Dict, List, Optional, Tuple
import asyncio
import httpx
from pydantic import BaseModel
import structlog

from zetra_ai.domain.models.copilot_state import RequestKind, clean
from zetra_ai.domain.models.dispatch_result import DispatchFailure, DispatchSuccess
from zetra_ai.domain.parsing.structured_output import (
    extract_reply_prefix, parse_structured_output
)
from zetra_ai.domain.streaming.pacing import (
    PacingOptions, PartialCallback, TypingPacer, emit
)
from zetra_ai.infrastructure.config.settings import CopilotSettings
from zetra_ai.infrastructure.observability.logging import copilot_logger, metrics
from zetra_ai.infrastructure.transport.dispatcher import TransportDispatcher

logger = structlog.get_logger(__name__)


class SseFrame(BaseModel):
    """One complete event-stream frame"""
    event: str = "message"
    data: str = ""


class SseFrameParser:
    """Incremental event-stream framing over a rolling text buffer"""

    def __init__(self):
        self.buffer = ""

    def feed(self, chunk: str) -> List[SseFrame]:
        """Add text and return every frame completed by it"""

        self.buffer += chunk.replace("\r\n", "\n")
        frames = []

        idx = self.buffer.find("\n\n")
        while idx != -1:
            block = self.buffer[:idx]
            self.buffer = self.buffer[idx + 2:]

            frame = self.parse_block(block)
            if frame is not None:
                frames.append(frame)

            idx = self.buffer.find("\n\n")

        return frames

    @staticmethod
    def parse_block(block: str) -> Optional[SseFrame]:
        event = ""
        data_lines = []
        for line in block.split("\n"):
            if line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "event":
                event = value.strip()
            elif field == "data":
                data_lines.append(value)

        if not event and not data_lines:
            return None
        return SseFrame(event=event or "message", data="\n".join(data_lines))


class StreamDecodeResult(BaseModel):
    """Outcome of a streamed reply, including fallback and cancellation"""
    raw_text: str = ""
    streamed: bool = False
    fell_back: bool = False
    cancelled: bool = False
    failure: Optional[DispatchFailure] = None


class _StreamFallback(Exception):
    """Internal signal: streaming is unavailable for this request"""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class _DecodeRun:
    def __init__(self):
        self.aborted = False


class StreamDecoder:
    """
    Consumes an incremental reply and reports the live reply prefix.

    Any streaming problem (unsupported route, failed request, no event
    stream, error frame, empty stream) falls back to the one-shot call and
    replays the parsed reply through the pacer, so callers see the same
    kind of progressive updates either way.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        dispatcher: TransportDispatcher,
        pacer: TypingPacer,
        settings: Optional[CopilotSettings] = None,
        fallback_pacing: Optional[PacingOptions] = None,
    ):
        self.client = client
        self.dispatcher = dispatcher
        self.pacer = pacer
        self.settings = settings or dispatcher.settings
        self.fallback_pacing = fallback_pacing or PacingOptions.words()
        self._current: Optional[_DecodeRun] = None

    def stop(self) -> None:
        """Abort the active decode (and its fallback reveal)"""
        if self._current is not None:
            self._current.aborted = True
        self.pacer.stop()

    async def run(
        self,
        payload: Dict[str, Any],
        on_partial: Optional[PartialCallback] = None,
        tag: Optional[str] = None,
    ) -> StreamDecodeResult:
        """Stream one chat request, falling back to the one-shot route on failure"""

        self.stop()
        run = _DecodeRun()
        self._current = run
        tag = tag or RequestKind.CHAT.value

        try:
            try:
                raw, cancelled = await asyncio.wait_for(
                    self._consume(run, payload, on_partial),
                    timeout=self.settings.stream_timeout,
                )
            except asyncio.TimeoutError:
                return await self._fallback(run, payload, on_partial, tag, "timeout")
            except _StreamFallback as signal:
                return await self._fallback(run, payload, on_partial, tag, signal.reason)
            except httpx.HTTPError as e:
                return await self._fallback(run, payload, on_partial, tag, f"transport: {e!r}")

            if cancelled:
                return StreamDecodeResult(raw_text=raw, streamed=True, cancelled=True)

            if not clean(raw):
                return await self._fallback(run, payload, on_partial, tag, "empty stream")

            copilot_logger.log_stream_event("done", len(raw))
            return StreamDecodeResult(raw_text=clean(raw), streamed=True)
        finally:
            if self._current is run:
                self._current = None

    async def _consume(
        self,
        run: _DecodeRun,
        payload: Dict[str, Any],
        on_partial: Optional[PartialCallback],
    ) -> Tuple[str, bool]:
        url = self.settings.route(self.settings.stream_path)
        parser = SseFrameParser()
        raw = ""
        shown = ""

        async with self.client.stream(
            "POST",
            url,
            json=payload,
            headers={"Accept": "text/event-stream"},
            timeout=self.settings.stream_timeout,
        ) as response:
            if not response.is_success:
                raise _StreamFallback(f"status {response.status_code}")

            content_type = response.headers.get("content-type", "").lower()
            if "text/event-stream" not in content_type:
                raise _StreamFallback(f"not an event stream ({content_type or 'no content type'})")

            copilot_logger.log_stream_event("open", 0)

            async for chunk in response.aiter_text():
                if run.aborted:
                    return raw, True

                for frame in parser.feed(chunk):
                    if run.aborted:
                        return raw, True

                    if frame.event == "error":
                        copilot_logger.log_stream_event("error", len(raw), {"data": frame.data[:200]})
                        raise _StreamFallback("error frame")

                    if frame.event == "done":
                        return raw, False

                    if frame.event == "delta":
                        raw += frame.data
                        partial = extract_reply_prefix(raw)
                        # partials only ever grow
                        if len(partial) > len(shown) and partial.startswith(shown):
                            shown = partial
                            await emit(on_partial, partial)

        return raw, run.aborted

    async def _fallback(
        self,
        run: _DecodeRun,
        payload: Dict[str, Any],
        on_partial: Optional[PartialCallback],
        tag: str,
        reason: str,
    ) -> StreamDecodeResult:
        logger.info("Streaming unavailable, using one-shot reply", reason=reason, tag=tag)
        metrics.increment_counter("stream.fallbacks", tags={"reason": reason.split(" ")[0]})

        if run.aborted:
            return StreamDecodeResult(cancelled=True, fell_back=True)

        result = await self.dispatcher.send(RequestKind.CHAT, payload, tag=tag)
        if run.aborted:
            return StreamDecodeResult(fell_back=True, cancelled=True)
        if isinstance(result, DispatchFailure):
            return StreamDecodeResult(fell_back=True, failure=result)

        raw = self._reply_text(result)

        if on_partial is not None and raw:
            completed = await self.pacer.run(
                parse_structured_output(raw).text,
                on_partial,
                self.fallback_pacing,
            )
            if not completed:
                return StreamDecodeResult(raw_text=raw, fell_back=True, cancelled=True)

        return StreamDecodeResult(raw_text=raw, fell_back=True)

    @staticmethod
    def _reply_text(result: DispatchSuccess) -> str:
        return result.reply_text()
