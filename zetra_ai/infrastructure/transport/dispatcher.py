from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import time
import httpx
import structlog

from zetra_ai.domain.models.copilot_state import RequestKind
from zetra_ai.domain.models.dispatch_result import (
    DispatchFailure, DispatchResult, DispatchSuccess
)
from zetra_ai.infrastructure.config.settings import CopilotSettings
from zetra_ai.infrastructure.observability.logging import copilot_logger, metrics

logger = structlog.get_logger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
BACKOFF_STEP_SECONDS = 0.35
MAX_RETRIES = 5
DIAGNOSTIC_BODY_CHARS = 900


def backoff_delay(attempt_index: int) -> float:
    """Delay before the attempt following `attempt_index` (0-based)"""
    return BACKOFF_STEP_SECONDS * (attempt_index + 1)


def decode_body(response: httpx.Response) -> Dict[str, Any]:
    """JSON body when the content type says so, else the text wrapped as raw"""

    content_type = response.headers.get("content-type", "").lower()
    if "json" in content_type:
        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text}
        return data if isinstance(data, dict) else {"data": data}
    return {"raw": response.text}


class TransportDispatcher:
    """Issues one logical request with a per-attempt timeout and bounded retries"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Optional[CopilotSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.settings = settings or CopilotSettings()
        self._sleep = sleep

    def budget_for(self, kind: RequestKind) -> float:
        """Per-attempt timeout in seconds for a request kind"""
        return {
            RequestKind.CHAT: self.settings.chat_timeout,
            RequestKind.VISION: self.settings.vision_timeout,
            RequestKind.IMAGE: self.settings.image_timeout,
            RequestKind.TRANSCRIBE: self.settings.transcribe_timeout,
        }[kind]

    def url_for(self, kind: RequestKind) -> str:
        path = {
            RequestKind.CHAT: self.settings.chat_path,
            RequestKind.VISION: self.settings.vision_path,
            RequestKind.IMAGE: self.settings.image_path,
            RequestKind.TRANSCRIBE: self.settings.transcribe_path,
        }[kind]
        return self.settings.route(path)

    async def send(
        self,
        kind: RequestKind,
        payload: Dict[str, Any],
        tag: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> DispatchResult:
        """Send a request, retrying retryable failures with linear backoff"""

        tag = tag or kind.value
        timeout = timeout if timeout is not None else self.budget_for(kind)
        retries = self.settings.max_retries if retries is None else retries
        retries = max(0, min(MAX_RETRIES, retries))
        url = self.url_for(kind)

        failure: Optional[DispatchFailure] = None
        for attempt in range(retries + 1):
            started = time.perf_counter()
            result = await self._attempt(kind, url, payload, tag, timeout, attempt + 1)
            duration_ms = round((time.perf_counter() - started) * 1000, 1)
            metrics.record_latency(f"dispatch.{kind.value}", duration_ms, {"tag": tag})

            if isinstance(result, DispatchSuccess):
                copilot_logger.log_dispatch_attempt(
                    tag, kind.value, attempt + 1, result.status, duration_ms, "success"
                )
                return result

            failure = result
            has_budget = attempt < retries
            copilot_logger.log_dispatch_attempt(
                tag,
                kind.value,
                attempt + 1,
                failure.status,
                duration_ms,
                "retry" if failure.retryable and has_budget else "failed",
                error=failure.body[:200],
            )
            if not failure.retryable or not has_budget:
                break

            metrics.increment_counter("dispatch.retries", tags={"kind": kind.value})
            await self._sleep(backoff_delay(attempt))

        logger.warning(
            "Request failed",
            tag=tag,
            kind=kind.value,
            status=failure.status,
            attempts=failure.attempts,
            retryable=failure.retryable,
        )
        return failure

    async def _attempt(
        self,
        kind: RequestKind,
        url: str,
        payload: Dict[str, Any],
        tag: str,
        timeout: float,
        attempt: int,
    ) -> DispatchResult:
        try:
            response = await asyncio.wait_for(
                self.client.post(
                    url,
                    json=payload,
                    headers={"Accept": "application/json"},
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return self._failure(kind, tag, attempt, 0, f"Request timed out after {timeout:g}s", True)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            return self._failure(kind, tag, attempt, 0, f"Network error: {e!r}", True)
        except Exception as e:
            logger.error("Unexpected transport error", tag=tag, error=str(e), exc_info=True)
            return self._failure(kind, tag, attempt, 0, f"{type(e).__name__}: {e}", False)

        if response.is_success:
            return DispatchSuccess(
                kind=kind,
                tag=tag,
                status=response.status_code,
                body=decode_body(response),
                text=response.text,
                attempts=attempt,
            )

        return self._failure(
            kind,
            tag,
            attempt,
            response.status_code,
            response.text,
            response.status_code in RETRYABLE_STATUSES,
        )

    @staticmethod
    def _failure(
        kind: RequestKind, tag: str, attempt: int, status: int, body: str, retryable: bool
    ) -> DispatchFailure:
        return DispatchFailure(
            kind=kind,
            tag=tag,
            status=status,
            body=(body or "")[:DIAGNOSTIC_BODY_CHARS],
            attempts=attempt,
            retryable=retryable,
        )
