from typing import Callable, Dict, Optional, Set
import asyncio
from datetime import datetime, timedelta
import structlog

from zetra_ai.domain.models.copilot_state import (
    AiMeta, AskContext, ConversationState, clean, utcnow
)
from zetra_ai.infrastructure.observability.logging import copilot_logger
from zetra_ai.infrastructure.storage.durable_store import DurableStore

logger = structlog.get_logger(__name__)

GLOBAL_KEY = "global"
DEFAULT_TTL = timedelta(hours=6)


def conversation_key(context: Optional[AskContext]) -> str:
    """Context key scoping memory: organization id, else the global fallback"""
    if context and context.org_id:
        return context.org_id
    return GLOBAL_KEY


def persisted_key(key: str) -> str:
    return f"zetra_ai_memory:{key}"


class ConversationMemoryStore:
    """In-process conversation memory with TTL, mirrored to a durable store"""

    def __init__(
        self,
        durable: DurableStore,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.durable = durable
        self.ttl = ttl
        self._clock = clock
        self.cache: Dict[str, ConversationState] = {}
        self._hydrated: Set[str] = set()
        self._pending: Set[asyncio.Task] = set()

    def is_expired(self, state: ConversationState) -> bool:
        return self._clock() - state.updated_at > self.ttl

    def get(self, key: str) -> Optional[ConversationState]:
        """Current state for a key, or None if absent or expired"""

        state = self.cache.get(key)
        if state is None:
            return None

        if self.is_expired(state):
            del self.cache[key]
            copilot_logger.log_memory_update(key, "expired")
            self._schedule_persist(key, None)
            return None

        return state

    def merge(
        self,
        prev: Optional[ConversationState],
        next_state: Optional[ConversationState],
    ) -> Optional[ConversationState]:
        """Field-wise merge where next's non-empty values win"""

        a = prev or ConversationState()
        b = next_state or ConversationState()

        merged = ConversationState(
            topic=clean(b.topic) or clean(a.topic) or None,
            objective=clean(b.objective) or clean(a.objective) or None,
            last_plan=clean(b.last_plan) or clean(a.last_plan) or None,
            strategy_level=b.strategy_level or a.strategy_level,
            lang=b.lang or a.lang,
            updated_at=self._clock(),
        )

        if not merged.is_informative():
            return None
        return merged

    def set(self, key: str, state: Optional[ConversationState]) -> None:
        """Replace the record for a key; persistence happens in the background"""

        if state is None:
            self.cache.pop(key, None)
            copilot_logger.log_memory_update(key, "cleared")
        else:
            self.cache[key] = state
            copilot_logger.log_memory_update(
                key,
                "set",
                state.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"updated_at"}),
            )

        self._schedule_persist(key, state)

    async def hydrate(self, key: str) -> None:
        """Load the persisted record once per key, unless a live one is cached"""

        if key in self._hydrated:
            return
        self._hydrated.add(key)

        cached = self.cache.get(key)
        if cached is not None and not self.is_expired(cached):
            return

        try:
            record = await self.durable.get_json(persisted_key(key))
        except Exception as e:
            logger.warning("Memory hydration failed", conversation_key=key, error=str(e))
            return

        if not record:
            return

        try:
            stored = ConversationState.model_validate(record)
        except ValueError as e:
            logger.warning("Discarding invalid memory record", conversation_key=key, error=str(e))
            return

        if self.is_expired(stored):
            self.cache.pop(key, None)
            await self._persist(key, None)
            return

        self.cache[key] = stored
        copilot_logger.log_memory_update(key, "hydrated")

    async def remember_reply(self, key: str, meta: AiMeta) -> Optional[ConversationState]:
        """Fold a parsed reply into the stored memory for a key"""

        if meta.memory is not None:
            next_state = meta.memory
        elif meta.lang:
            next_state = ConversationState(lang=meta.lang)
        else:
            next_state = None

        merged = self.merge(self.get(key), next_state)
        self.set(key, merged)
        return merged

    async def clear(self, key: str) -> None:
        """Forget a key in-process and in the durable store"""

        self.cache.pop(key, None)
        self._hydrated.discard(key)
        copilot_logger.log_memory_update(key, "cleared")
        await self._persist(key, None)

    async def flush(self) -> None:
        """Wait for outstanding background writes"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule_persist(self, key: str, state: Optional[ConversationState]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, memory write kept in-process only", conversation_key=key)
            return

        task = loop.create_task(self._persist(key, state))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, key: str, state: Optional[ConversationState]) -> None:
        try:
            await self.durable.set_json(persisted_key(key), state.to_record() if state else None)
        except Exception as e:
            logger.warning("Memory persist failed", conversation_key=key, error=str(e))
