import structlog
import logging
import sys
from typing import Dict, Any, List, Optional, Tuple
from datetime import datetime, timezone
import os

# contextvars copied onto every event when bound
REPLY_CONTEXT_KEYS = ("conversation_key", "session_id")


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "zetra-copilot"
) -> None:
    """Route structlog through stdlib logging with a JSON or console renderer"""

    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer(ensure_ascii=False)
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_reply_context,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ZETRA_ENVIRONMENT", "development"),
    )


def add_reply_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Stamp events with the conversation and session they belong to"""

    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

    bound = structlog.contextvars.get_contextvars()
    for key in REPLY_CONTEXT_KEYS:
        if bound.get(key) and key not in event_dict:
            event_dict[key] = bound[key]

    return event_dict


class CopilotLogger:
    """Event helpers for the reply pipeline"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_dispatch_attempt(
        self,
        tag: str,
        kind: str,
        attempt: int,
        status: int,
        duration_ms: float,
        outcome: str,
        error: Optional[str] = None
    ):
        log = self.logger.info if outcome == "success" else self.logger.warning
        log(
            "dispatch_attempt",
            tag=tag,
            kind=kind,
            attempt=attempt,
            status=status,
            duration_ms=duration_ms,
            outcome=outcome,
            error=error,
        )

    def log_stream_event(self, event: str, raw_length: int, details: Optional[Dict[str, Any]] = None):
        """Stream lifecycle: open, error, done"""
        self.logger.debug("stream_event", stream_event=event, raw_length=raw_length, **(details or {}))

    def log_memory_update(self, conversation_key: str, action: str, fields: Optional[Dict[str, Any]] = None):
        self.logger.info("memory_update", conversation_key=conversation_key, action=action, fields=fields or {})

    def log_task_bridge(self, org_id: str, created: int, failed: int, errors: Optional[List[str]] = None):
        log = self.logger.warning if failed else self.logger.info
        log("task_bridge", org_id=org_id, created=created, failed=failed, errors=errors or [])


# Global logger instance
copilot_logger = CopilotLogger("zetra_ai")


class LatencyStats:
    """Running latency aggregate for one operation"""

    def __init__(self):
        self.count = 0
        self.total_ms = 0.0
        self.min_ms: Optional[float] = None
        self.max_ms = 0.0

    def add(self, duration_ms: float) -> None:
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    def summary(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg": round(self.total_ms / self.count, 1) if self.count else 0,
            "min": self.min_ms or 0,
            "max": self.max_ms,
        }


def _series(name: str, tags: Optional[Dict[str, str]]) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
    return name, tuple(sorted((tags or {}).items()))


class MetricsCollector:
    """In-process metrics; every sample is also emitted as a debug event"""

    def __init__(self):
        self.latencies: Dict[str, LatencyStats] = {}
        self.counters: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], int] = {}
        self.gauges: Dict[str, float] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        self.latencies.setdefault(operation, LatencyStats()).add(duration_ms)
        copilot_logger.logger.debug(
            "metric", metric_type="latency", operation=operation, duration_ms=duration_ms, tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        key = _series(name, tags)
        self.counters[key] = self.counters.get(key, 0) + value
        copilot_logger.logger.debug("metric", metric_type="counter", name=name, value=value, tags=tags or {})

    def counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> int:
        """Current value of a counter; without tags, the sum over all tag sets"""
        if tags is not None:
            return self.counters.get(_series(name, tags), 0)
        return sum(value for (series, _), value in self.counters.items() if series == name)

    def set_gauge(self, name: str, value: float):
        self.gauges[name] = value
        copilot_logger.logger.debug("metric", metric_type="gauge", name=name, value=value)

    def get_metrics_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            f"latency.{operation}": stats.summary() for operation, stats in self.latencies.items()
        }
        for name in {series for series, _ in self.counters}:
            summary[name] = self.counter(name)
        summary.update(self.gauges)
        return summary


# Global metrics collector
metrics = MetricsCollector()
