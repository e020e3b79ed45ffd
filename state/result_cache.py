import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from state.timers import PeriodicSweep

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    stored_at: float


class ResultCache:
    """Short-lived key/value store with keys scoped by chat (or user) id.

    A read after ``ttl`` seconds behaves like a miss and evicts the entry; the
    background sweep evicts expired entries nobody reads again.
    """

    def __init__(
        self,
        ttl: float = 300.0,
        sweep_interval: float = 120.0,
        name: str = "results",
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.ttl = ttl
        self.name = name
        self._clock = clock or time.monotonic
        self._entries: Dict[str, _Entry] = {}
        self._sweep = PeriodicSweep(f"{name}-cache", sweep_interval, self.sweep)

    @staticmethod
    def make_key(scope_id: int, name: str) -> str:
        # Одинаковое имя вида в одном чате всегда попадает в один слот
        return f"{scope_id}_{' '.join(name.split())}"

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: _Entry, now: float) -> bool:
        return now - entry.stored_at > self.ttl

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            del self._entries[key]
            return None
        return entry.value

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear_chat(self, scope_id: int) -> int:
        prefix = f"{scope_id}_"
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.info(f"[{self.name}] cleared {len(keys)} entries for {scope_id}")
        return len(keys)

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._expired(entry, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info(f"[{self.name}] cleaned {len(expired)} expired entries")
        return len(expired)

    def start(self) -> None:
        self._sweep.start()

    async def stop(self) -> None:
        await self._sweep.stop()
