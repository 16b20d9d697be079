from typing import Optional

from zetra_ai.domain.models.dispatch_result import DispatchFailure


class CopilotError(Exception):
    """Base class for errors surfaced by the reply engine"""


class EmptyMessageError(CopilotError, ValueError):
    """The user message was empty after trimming"""

    def __init__(self):
        super().__init__("Empty message")


class MessageTooLongError(CopilotError, ValueError):
    """The user message exceeds the configured character limit"""

    def __init__(self, length: int, limit: int):
        self.length = length
        self.limit = limit
        super().__init__(f"Message too long ({length} chars, limit {limit:,})")


class DispatchError(CopilotError):
    """A request failed terminally or exhausted its retries"""

    def __init__(self, failure: DispatchFailure):
        self.failure = failure
        status = f" [{failure.status}]" if failure.status else ""
        super().__init__(f"{failure.message}{status}")

    @property
    def retryable(self) -> bool:
        return self.failure.retryable


class ReplyCancelledError(CopilotError):
    """The active reply was stopped before it completed"""

    def __init__(self, tag: Optional[str] = None):
        self.tag = tag
        super().__init__("Reply cancelled")


class NothingToRetryError(CopilotError):
    """A retry was requested but no payload is retained"""

    def __init__(self):
        super().__init__("Nothing to retry")
