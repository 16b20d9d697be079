import os
from typing import Optional
from pydantic import BaseModel, Field


DEFAULT_WORKER_URL = "https://zetra-ai-worker.jofreyjofreysanga.workers.dev"


def _env(name: str, default: str = "") -> str:
    return os.getenv(f"ZETRA_{name}", default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    return int(raw) if raw else default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class CopilotSettings(BaseModel):
    """Runtime configuration for the reply engine"""

    # Worker routes
    worker_url: str = DEFAULT_WORKER_URL
    chat_path: str = "/v1/chat"
    stream_path: str = "/stream"
    vision_path: str = "/v1/vision"
    image_path: str = "/v1/image"
    transcribe_path: str = "/v1/transcribe"

    # Per-kind budgets (seconds / extra attempts)
    chat_timeout: float = 25.0
    vision_timeout: float = 40.0
    image_timeout: float = 60.0
    transcribe_timeout: float = 45.0
    stream_timeout: float = 60.0
    max_retries: int = Field(default=2, ge=0, le=5)

    streaming_enabled: bool = True

    # Conversation memory
    memory_ttl_seconds: float = 6 * 60 * 60
    memory_dir: Optional[str] = None

    # Packing limits
    history_limit: int = 12
    history_turn_chars: int = 1400
    max_message_chars: int = 12_000

    # Task bridge
    task_autosave: bool = False
    task_rpc_url: Optional[str] = None
    task_rpc_key: Optional[str] = None

    log_level: str = "INFO"
    log_format: str = "json"

    def route(self, path: str) -> str:
        """Join a worker route onto the base URL"""
        base = self.worker_url.strip().rstrip("/")
        path = path.strip()
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{base}{path}"

    @classmethod
    def from_env(cls) -> "CopilotSettings":
        """Build settings from ZETRA_* environment variables"""

        defaults = cls()
        return cls(
            worker_url=_env("AI_WORKER_URL", defaults.worker_url),
            chat_path=_env("CHAT_PATH", defaults.chat_path),
            stream_path=_env("STREAM_PATH", defaults.stream_path),
            vision_path=_env("VISION_PATH", defaults.vision_path),
            image_path=_env("IMAGE_PATH", defaults.image_path),
            transcribe_path=_env("TRANSCRIBE_PATH", defaults.transcribe_path),
            chat_timeout=_env_float("CHAT_TIMEOUT", defaults.chat_timeout),
            vision_timeout=_env_float("VISION_TIMEOUT", defaults.vision_timeout),
            image_timeout=_env_float("IMAGE_TIMEOUT", defaults.image_timeout),
            transcribe_timeout=_env_float("TRANSCRIBE_TIMEOUT", defaults.transcribe_timeout),
            stream_timeout=_env_float("STREAM_TIMEOUT", defaults.stream_timeout),
            max_retries=_env_int("MAX_RETRIES", defaults.max_retries),
            streaming_enabled=_env_bool("STREAMING", defaults.streaming_enabled),
            memory_ttl_seconds=_env_float("MEMORY_TTL_SECONDS", defaults.memory_ttl_seconds),
            memory_dir=_env("MEMORY_DIR") or None,
            history_limit=_env_int("HISTORY_LIMIT", defaults.history_limit),
            max_message_chars=_env_int("MAX_MESSAGE_CHARS", defaults.max_message_chars),
            task_autosave=_env_bool("TASK_AUTOSAVE", defaults.task_autosave),
            task_rpc_url=_env("TASK_RPC_URL") or None,
            task_rpc_key=_env("TASK_RPC_KEY") or None,
            log_level=_env("LOG_LEVEL", defaults.log_level),
            log_format=_env("LOG_FORMAT", defaults.log_format),
        )
