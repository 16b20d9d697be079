from typing import Dict, Set, Optional
from datetime import datetime
from fastapi import WebSocket
import asyncio
import structlog

from zetra_ai.application.websocket.schema.events import BaseEvent, ConnectionEvent, ErrorEvent
from zetra_ai.domain.models.copilot_state import utcnow
from zetra_ai.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

STALE_AFTER_SECONDS = 300
SWEEP_INTERVAL_SECONDS = 60


class SessionInfo:
    """Bookkeeping for one open chat socket"""

    def __init__(self, websocket: WebSocket, org_id: str):
        self.websocket = websocket
        self.org_id = org_id
        self.connected_at = utcnow()
        self.last_activity = self.connected_at

    def idle_seconds(self, now: datetime) -> float:
        return (now - self.last_activity).total_seconds()


class ConnectionManager:
    """Open copilot sockets keyed by session id"""

    def __init__(self):
        self.sessions: Dict[str, SessionInfo] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, session_id: str, org_id: str):
        await websocket.accept()

        async with self._lock:
            self.sessions[session_id] = SessionInfo(websocket, org_id)
            metrics.set_gauge("ws.connections", len(self.sessions))

        logger.info("WebSocket connected", session_id=session_id, org_id=org_id)
        await self.send_event(session_id, ConnectionEvent(status="connected"))

    async def disconnect(self, session_id: str):
        async with self._lock:
            info = self.sessions.pop(session_id, None)
            metrics.set_gauge("ws.connections", len(self.sessions))

        if info is None:
            return

        try:
            await info.websocket.close()
        except Exception as e:
            logger.debug("WebSocket already closed", session_id=session_id, error=str(e))

        logger.info("WebSocket disconnected", session_id=session_id)

    async def send_event(self, session_id: str, event: BaseEvent) -> bool:
        """Send an event to one session; False if it is gone or the send failed"""

        info = self.sessions.get(session_id)
        if info is None:
            logger.warning("Dropping event for closed session", session_id=session_id, event_type=event.type.value)
            return False

        if event.session_id is None:
            event.session_id = session_id

        try:
            await info.websocket.send_json(event.model_dump(mode="json"))
        except Exception as e:
            logger.error("Failed to send event", session_id=session_id, error=str(e))
            await self.disconnect(session_id)
            return False

        info.last_activity = utcnow()
        return True

    async def send_error(
        self,
        session_id: str,
        error_message: str,
        error_code: Optional[str] = None,
        retry_label: Optional[str] = None,
    ):
        await self.send_event(
            session_id,
            ErrorEvent(
                payload={"message": error_message},
                error_code=error_code,
                retry_label=retry_label,
            )
        )

    def get_active_sessions(self, org_id: Optional[str] = None) -> Set[str]:
        """Session ids, optionally only those of one organization"""
        return {
            session_id
            for session_id, info in self.sessions.items()
            if org_id is None or info.org_id == org_id
        }

    def stale_sessions(self, now: Optional[datetime] = None) -> Set[str]:
        now = now or utcnow()
        return {
            session_id
            for session_id, info in list(self.sessions.items())
            if info.idle_seconds(now) > STALE_AFTER_SECONDS
        }

    async def health_check(self):
        """Close sockets idle for longer than STALE_AFTER_SECONDS, forever"""
        while True:
            for session_id in self.stale_sessions():
                logger.warning("Disconnecting stale session", session_id=session_id)
                await self.disconnect(session_id)

            await asyncio.sleep(SWEEP_INTERVAL_SECONDS)
