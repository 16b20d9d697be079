from typing import Dict, Any, List, Optional, Literal, Union, Annotated
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone
from enum import Enum
from langchain_core.messages import BaseMessage


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean(value: Any) -> str:
    """Stringify and trim, mapping None to an empty string"""
    if value is None:
        return ""
    return str(value).strip()


class AiMode(str, Enum):
    """Reply language mode requested by the user"""
    AUTO = "AUTO"
    SW = "SW"
    EN = "EN"


class ReplyLang(str, Enum):
    """Language reported by (or forced on) the model"""
    SW = "sw"
    EN = "en"
    AUTO = "auto"


class StrategyLevel(str, Enum):
    """How far the conversation has progressed from idea to execution"""
    IDEA = "IDEA"
    PLAN = "PLAN"
    EXECUTION = "EXECUTION"


class ActionPriority(str, Enum):
    """Action priority levels"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RequestKind(str, Enum):
    """Logical request kinds handled by the dispatcher"""
    CHAT = "chat"
    VISION = "vision"
    IMAGE = "image"
    TRANSCRIBE = "transcribe"


class ConversationState(BaseModel):
    """Short-lived conversation memory for one context key"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    topic: Optional[str] = None
    objective: Optional[str] = None
    last_plan: Optional[str] = Field(None, alias="lastPlan")
    strategy_level: Optional[StrategyLevel] = Field(None, alias="strategyLevel")
    lang: Optional[ReplyLang] = None
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    def is_informative(self) -> bool:
        """True if any remembered field carries a value"""
        return bool(
            self.topic or self.objective or self.last_plan
            or self.strategy_level or self.lang
        )

    def to_record(self) -> Dict[str, Any]:
        """Serialize for the durable store"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ActionItem(BaseModel):
    """A machine-readable action suggested by the model"""
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    steps: Optional[List[str]] = None
    priority: Optional[ActionPriority] = None
    eta: Optional[str] = None


class AiMeta(BaseModel):
    """Parsed model output"""
    model_config = ConfigDict(populate_by_name=True)

    text: str
    actions: List[ActionItem] = Field(default_factory=list)
    next_move: Optional[str] = Field(None, alias="nextMove")
    lang: Optional[ReplyLang] = None
    memory: Optional[ConversationState] = None


class AskContext(BaseModel):
    """Organization and store attributes the reply is scoped to"""
    model_config = ConfigDict(populate_by_name=True)

    org_id: Optional[str] = Field(None, alias="orgId")
    org_name: Optional[str] = Field(None, alias="orgName")
    store_id: Optional[str] = Field(None, alias="storeId")
    store_name: Optional[str] = Field(None, alias="storeName")
    role: Optional[str] = None
    locale: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None
    country: Optional[str] = None

    @field_validator("org_id", "store_id")
    @classmethod
    def _clamp_id(cls, value: Optional[str]) -> Optional[str]:
        return clean(value)[:128] or None

    @field_validator("org_name", "store_name", "role")
    @classmethod
    def _clamp_name(cls, value: Optional[str]) -> Optional[str]:
        return clean(value)[:1200] or None

    @field_validator("currency")
    @classmethod
    def _clamp_currency(cls, value: Optional[str]) -> Optional[str]:
        return clean(value)[:32] or None

    @field_validator("locale", "timezone", "country")
    @classmethod
    def _clamp_region(cls, value: Optional[str]) -> Optional[str]:
        return clean(value)[:64] or None


class AttachedImage(BaseModel):
    """An image attached to the current outbound request only"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    source_ref: str = Field(alias="sourceRef")
    embedded_data: str = Field(alias="embeddedData", repr=False)


class ChatRetryPayload(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal[RequestKind.CHAT] = RequestKind.CHAT
    text: str
    history: List[BaseMessage] = Field(default_factory=list)


class VisionRetryPayload(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal[RequestKind.VISION] = RequestKind.VISION
    text: str
    history: List[BaseMessage] = Field(default_factory=list)
    images: List[AttachedImage] = Field(default_factory=list)


class ImageRetryPayload(BaseModel):
    kind: Literal[RequestKind.IMAGE] = RequestKind.IMAGE
    prompt: str


RetryPayload = Annotated[
    Union[ChatRetryPayload, VisionRetryPayload, ImageRetryPayload],
    Field(discriminator="kind"),
]


class TaskBridgeReport(BaseModel):
    """Aggregate outcome of saving actions as tasks"""
    created: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class CopilotReply(BaseModel):
    """Final result of one reply pipeline run"""
    model_config = ConfigDict(populate_by_name=True)

    meta: AiMeta
    display_text: str = Field(alias="displayText")
    streamed: bool = False
    fell_back: bool = Field(False, alias="fellBack")
    task_report: Optional[TaskBridgeReport] = Field(None, alias="taskReport")
