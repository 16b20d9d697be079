from typing import Dict, Any, Optional, List, Literal
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from zetra_ai.domain.models.copilot_state import (
    AiMode, AskContext, AttachedImage, CopilotReply, utcnow
)


class EventType(str, Enum):
    """WebSocket event types"""
    MARKDOWN = "markdown"
    REPLY = "reply"
    ERROR = "error"
    CONNECTION = "connection"
    USER_MESSAGE = "user_message"
    RETRY = "retry"
    STOP = "stop"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    session_id: Optional[str] = None


class MarkdownEvent(BaseEvent):
    """Growing reply prefix while a reply is being revealed"""
    type: Literal[EventType.MARKDOWN] = EventType.MARKDOWN
    payload: str


class ReplyEvent(BaseEvent):
    """Final reply with parsed actions"""
    type: Literal[EventType.REPLY] = EventType.REPLY
    payload: Dict[str, Any]

    @classmethod
    def create(cls, reply: CopilotReply, session_id: Optional[str] = None):
        return cls(
            payload=reply.model_dump(mode="json", by_alias=True, exclude_none=True),
            session_id=session_id
        )


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None
    retry_label: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected", "reconnecting"]


class ChatTurn(BaseModel):
    """One prior chat turn as sent by a client"""
    role: Literal["user", "assistant"]
    content: str


def to_messages(turns: Optional[List[ChatTurn]]) -> List[BaseMessage]:
    messages = []
    for turn in turns or []:
        if turn.role == "assistant":
            messages.append(AIMessage(content=turn.content))
        else:
            messages.append(HumanMessage(content=turn.content))
    return messages


class UserMessage(BaseEvent):
    """User message event"""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str
    mode: AiMode = AiMode.AUTO
    context: Optional[AskContext] = None
    attachments: Optional[List[AttachedImage]] = None


class RetryRequest(BaseEvent):
    """Resubmit the last failed request"""
    type: Literal[EventType.RETRY] = EventType.RETRY


class StopRequest(BaseEvent):
    """Stop the reply in progress"""
    type: Literal[EventType.STOP] = EventType.STOP


class ChatRequest(BaseModel):
    """Body of the one-shot REST chat call"""
    message: str
    mode: AiMode = AiMode.AUTO
    history: List[ChatTurn] = Field(default_factory=list)
    context: Optional[AskContext] = None
