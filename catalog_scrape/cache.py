import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar, Union

import orjson

CLEAN = Path("data/clean")

V = TypeVar("V")


class TTLStore(Generic[V]):
    """
    Lock-guarded key/value store with per-entry expiry.

    Entries are evicted lazily when read after their expiry; nothing sweeps
    in the background. A ttl of 0 disables storage entirely.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = max(0.0, float(ttl))
        self.clock = clock
        self._data: Dict[str, Tuple[float, V]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            expires_at, value = item
            if self.clock() >= expires_at:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: V, expires_at: Optional[float] = None) -> None:
        if not self.enabled:
            return
        if expires_at is None:
            expires_at = self.clock() + self.ttl
        with self._lock:
            self._data[key] = (expires_at, value)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class ResponseCache:
    """Raw HTML keyed by the canonical (pre-variant) page URL."""

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self._store: TTLStore[str] = TTLStore(ttl, clock)

    @property
    def ttl(self) -> float:
        return self._store.ttl

    def get(self, url: str) -> Optional[str]:
        return self._store.get(url)

    def set(self, url: str, html: str) -> None:
        self._store.set(url, html)

    def clear(self) -> None:
        self._store.clear()

    def __contains__(self, url: str) -> bool:
        return url in self._store

    def __len__(self) -> int:
        return len(self._store)


def append_jsonl(filename: Union[str, Path], obj: Dict[str, Any], directory: Path = CLEAN):
    directory.mkdir(parents=True, exist_ok=True)
    with open(directory / filename, "ab") as f:
        f.write(orjson.dumps(obj) + b"\n")
