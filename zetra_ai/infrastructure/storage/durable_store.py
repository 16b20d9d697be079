"""
Durable key-value storage for conversation memory.

The reply engine treats durable storage as an opaque JSON get/set/delete
interface. Nothing here is transactional; callers accept last-write-wins.
"""

from typing import Any, Dict, Optional, Protocol
import asyncio
import json
import re
from pathlib import Path
import structlog

logger = structlog.get_logger(__name__)


class DurableStore(Protocol):
    """Opaque async JSON store keyed by string"""

    async def get_json(self, key: str) -> Optional[Any]:
        ...

    async def set_json(self, key: str, value: Optional[Any]) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class InMemoryDurableStore:
    """Process-local store, used for tests and ephemeral sessions"""

    def __init__(self):
        self.data: Dict[str, str] = {}

    async def get_json(self, key: str) -> Optional[Any]:
        raw = self.data.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: Optional[Any]) -> None:
        # None is stored as absent
        if value is None:
            self.data.pop(key, None)
            return
        self.data[key] = json.dumps(value)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class JsonFileDurableStore:
    """One JSON file per key under a directory"""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_CHARS.sub('_', key)}.json"

    async def get_json(self, key: str) -> Optional[Any]:
        path = self._path_for(key)
        return await asyncio.to_thread(self._read, path)

    async def set_json(self, key: str, value: Optional[Any]) -> None:
        path = self._path_for(key)
        if value is None:
            await asyncio.to_thread(self._remove, path)
            return
        await asyncio.to_thread(self._write, path, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._remove, self._path_for(key))

    @staticmethod
    def _read(path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable memory record", path=str(path))
            return None

    @staticmethod
    def _write(path: Path, value: Any) -> None:
        tmp = path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(value, f, ensure_ascii=False)
        tmp.replace(path)

    @staticmethod
    def _remove(path: Path) -> None:
        path.unlink(missing_ok=True)
