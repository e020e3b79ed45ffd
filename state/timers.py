import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class PeriodicSweep:
    """Runs a synchronous callback every ``interval`` seconds on the running loop."""

    def __init__(self, name: str, interval: float, callback: Callable[[], object]) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"sweep:{self.name}")
        logger.info(f"[{self.name}] sweep started, interval={self.interval}s")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"[{self.name}] sweep stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self._callback()
            except Exception:
                # Очистка не должна останавливать цикл
                logger.exception(f"[{self.name}] sweep failed")


class Debouncer:
    """Per-key delayed action.

    Each key holds at most one timer. The callback for a key fires exactly once,
    unless the timer is cancelled first. ``extend`` pushes the deadline back
    without changing the callback.
    """

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self._timers: Dict[Hashable, Tuple[asyncio.TimerHandle, Callable[[], None]]] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._timers

    def __len__(self) -> int:
        return len(self._timers)

    def schedule(self, key: Hashable, callback: Callable[[], None], delay: Optional[float] = None) -> bool:
        """Arm a timer for ``key``. Returns False if one is already armed."""
        if key in self._timers:
            return False
        loop = asyncio.get_running_loop()
        handle = loop.call_later(self.delay if delay is None else delay, self._fire, key)
        self._timers[key] = (handle, callback)
        return True

    def extend(self, key: Hashable, delay: Optional[float] = None) -> bool:
        entry = self._timers.get(key)
        if entry is None:
            return False
        handle, callback = entry
        handle.cancel()
        loop = asyncio.get_running_loop()
        new_handle = loop.call_later(self.delay if delay is None else delay, self._fire, key)
        self._timers[key] = (new_handle, callback)
        return True

    def cancel(self, key: Hashable) -> bool:
        entry = self._timers.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    def cancel_all(self) -> int:
        count = len(self._timers)
        for handle, _ in self._timers.values():
            handle.cancel()
        self._timers.clear()
        return count

    def _fire(self, key: Hashable) -> None:
        entry = self._timers.pop(key, None)
        if entry is None:
            return
        try:
            entry[1]()
        except Exception:
            logger.exception(f"[debounce] callback for {key!r} failed")


class TaskSupervisor:
    """Keeps references to fire-and-forget tasks and logs the ones that fail."""

    def __init__(self, name: str = "tasks") -> None:
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.name}] task {task.get_name()} failed: {exc!r}", exc_info=exc)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"[{self.name}] cancelled {len(tasks)} pending tasks")
