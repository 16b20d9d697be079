from typing import Any, Dict, List, Optional, Protocol
import httpx
import structlog

from zetra_ai.domain.models.copilot_state import (
    ActionItem, AskContext, TaskBridgeReport, clean
)
from zetra_ai.infrastructure.observability.logging import copilot_logger, metrics

logger = structlog.get_logger(__name__)

TASK_RPC_NAME = "create_task_from_ai"


class TaskSink(Protocol):
    """Destination for task creation calls"""

    async def create_task(self, params: Dict[str, Any]) -> None:
        ...


class RpcTaskSink:
    """Posts task creation calls to a database RPC endpoint"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        rpc_url: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
    ):
        self.client = client
        self.url = f"{rpc_url.rstrip('/')}/{TASK_RPC_NAME}"
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def create_task(self, params: Dict[str, Any]) -> None:
        response = await self.client.post(
            self.url, json=params, headers=self._headers(), timeout=self.timeout
        )
        response.raise_for_status()


def task_params(action: ActionItem, org_id: str, store_id: Optional[str]) -> Dict[str, Any]:
    steps = [clean(step) for step in action.steps or [] if clean(step)]
    return {
        "p_org_id": org_id,
        "p_store_id": store_id,
        "p_title": clean(action.title),
        "p_steps": steps,
        "p_priority": action.priority.value if action.priority else None,
        "p_eta": clean(action.eta) or None,
    }


def _error_message(error: Exception) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        try:
            body = error.response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and clean(body.get("message")):
            return clean(body.get("message"))
        return f"HTTP {error.response.status_code}"
    return clean(str(error)) or type(error).__name__


class TaskBridge:
    """Saves parsed actions as tasks; never raises"""

    def __init__(self, sink: Optional[TaskSink] = None, enabled: bool = False):
        self.sink = sink
        self.enabled = enabled

    async def save(
        self,
        actions: List[ActionItem],
        context: Optional[AskContext],
    ) -> Optional[TaskBridgeReport]:
        """Create one task per titled action; None when the bridge is a no-op"""

        org_id = context.org_id if context else None
        if not self.enabled or self.sink is None or not actions or not org_id:
            return None

        store_id = context.store_id
        report = TaskBridgeReport()

        for action in actions:
            if not clean(action.title):
                continue
            try:
                await self.sink.create_task(task_params(action, org_id, store_id))
                report.created += 1
            except Exception as e:
                report.failed += 1
                report.errors.append(_error_message(e) or "Unknown task error")

        copilot_logger.log_task_bridge(org_id, report.created, report.failed, report.errors)
        metrics.increment_counter("tasks.created", report.created)
        if report.failed:
            metrics.increment_counter("tasks.failed", report.failed)
        return report
