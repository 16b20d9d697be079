from typing import Any, Dict, Literal, Union
import json
from pydantic import BaseModel, Field

from zetra_ai.domain.models.copilot_state import RequestKind, clean


class DispatchSuccess(BaseModel):
    """A request that completed with a 2xx status"""
    ok: Literal[True] = True
    kind: RequestKind
    tag: str
    status: int
    body: Dict[str, Any] = Field(default_factory=dict)
    text: str = ""
    attempts: int = 1

    def reply_text(self) -> str:
        """Raw model reply carried by a chat or vision body"""
        for key in ("reply", "text", "message", "raw"):
            value = clean(self.body.get(key))
            if value:
                return value
        return ""


class DispatchFailure(BaseModel):
    """A request that failed terminally or ran out of retries"""
    ok: Literal[False] = False
    kind: RequestKind
    tag: str
    status: int = 0
    body: str = ""
    attempts: int = 1
    retryable: bool = False

    @property
    def message(self) -> str:
        """Best human-readable diagnostic for this failure"""

        try:
            parsed = json.loads(self.body) if self.body else None
        except ValueError:
            parsed = None

        if isinstance(parsed, dict):
            error = parsed.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            for candidate in (error, parsed.get("message")):
                if clean(candidate):
                    return clean(candidate)

        if clean(self.body):
            return clean(self.body)
        return f"AI request failed ({self.status})" if self.status else "AI request failed"


DispatchResult = Union[DispatchSuccess, DispatchFailure]
