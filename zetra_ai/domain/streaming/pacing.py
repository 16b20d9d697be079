from typing import Awaitable, Callable, List, Optional, Union
from enum import Enum
import asyncio
import inspect
import random
import re
import time
from pydantic import BaseModel
import structlog

logger = structlog.get_logger(__name__)

PartialCallback = Callable[[str], Union[None, Awaitable[None]]]

HARD_PAUSE_CHARS = frozenset(".!?\n")
SOFT_PAUSE_CHARS = frozenset(",;:")
MIN_DELAY_MS = 12
_WORD_CHUNK = re.compile(r"\S+\s*|\s+")


async def emit(callback: Optional[PartialCallback], text: str) -> None:
    """Invoke a partial-update callback that may be sync or async"""
    if callback is None:
        return
    result = callback(text)
    if inspect.isawaitable(result):
        await result


class Granularity(str, Enum):
    CHAR = "char"
    WORD = "word"


class PacingOptions(BaseModel):
    """Cadence of a simulated reveal, in milliseconds"""
    base_ms: int = 28
    jitter_ms: int = 18
    soft_pause_ms: int = 80
    hard_pause_ms: int = 160
    max_ms: int = 25_000
    granularity: Granularity = Granularity.CHAR

    @classmethod
    def words(cls) -> "PacingOptions":
        return cls(
            base_ms=38,
            jitter_ms=26,
            soft_pause_ms=65,
            hard_pause_ms=65,
            max_ms=28_000,
            granularity=Granularity.WORD,
        )


def speed_factor(length: int) -> float:
    """Longer texts are revealed faster"""
    if length > 1800:
        return 0.72
    if length > 1000:
        return 0.82
    if length > 600:
        return 0.9
    return 1.0


class _PacingRun:
    def __init__(self):
        self.aborted = False


class TypingPacer:
    """
    Reveals an already-complete text in jittered chunks.

    One pacer serves one output target. Starting a run cancels the run in
    progress, and stop() cancels it explicitly; the abort flag is checked
    before every chunk.
    """

    def __init__(
        self,
        options: Optional[PacingOptions] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.options = options or PacingOptions()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self._current: Optional[_PacingRun] = None

    @property
    def running(self) -> bool:
        return self._current is not None and not self._current.aborted

    def stop(self) -> None:
        if self._current is not None:
            self._current.aborted = True

    def chunks(self, text: str, granularity: Granularity) -> List[str]:
        """Split text into reveal chunks"""

        if granularity == Granularity.WORD:
            return _WORD_CHUNK.findall(text)

        out = []
        i = 0
        while i < len(text):
            r = self._rng.random()
            size = 1 if r < 0.78 else 2 if r < 0.95 else 3
            out.append(text[i:i + size])
            i += size
        return out

    def delay_after(self, chunk: str, options: PacingOptions, factor: float) -> float:
        """Seconds to wait after revealing a chunk"""

        delay = (options.base_ms + self._rng.randint(0, max(0, options.jitter_ms))) * factor
        token = chunk.rstrip(" \t")
        last = token[-1:] if token else ""
        if last in HARD_PAUSE_CHARS:
            delay += options.hard_pause_ms
        elif last in SOFT_PAUSE_CHARS:
            delay += options.soft_pause_ms
        return max(MIN_DELAY_MS, delay) / 1000

    async def run(
        self,
        text: str,
        on_update: PartialCallback,
        options: Optional[PacingOptions] = None,
    ) -> bool:
        """Reveal `text` through `on_update`; False if the run was cancelled"""

        self.stop()
        run = _PacingRun()
        self._current = run
        options = options or self.options

        try:
            if not text:
                await emit(on_update, "")
                return True

            factor = speed_factor(len(text)) if options.granularity == Granularity.CHAR else 1.0
            max_seconds = max(1000, options.max_ms) / 1000
            started = self._clock()
            shown = ""

            for chunk in self.chunks(text, options.granularity):
                if run.aborted:
                    logger.debug("Pacing cancelled", shown=len(shown), total=len(text))
                    return False

                shown += chunk
                await emit(on_update, shown)
                if len(shown) >= len(text):
                    break

                await self._sleep(self.delay_after(chunk, options, factor))

                if run.aborted:
                    return False
                if self._clock() - started > max_seconds:
                    await emit(on_update, text)
                    return True

            return True
        finally:
            if self._current is run:
                self._current = None
