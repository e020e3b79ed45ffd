import logging
import threading
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Dict, Hashable, Optional, Tuple
from zoneinfo import ZoneInfo

from state.timers import PeriodicSweep

logger = logging.getLogger(__name__)

PRIVATE_CHAT = "private"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_weekly_reset(now: datetime, tz: ZoneInfo, weekday: int = 0, hour: int = 0) -> datetime:
    """Next ``weekday`` at ``hour``:00 local time in ``tz``, strictly after ``now``, as UTC."""
    local = now.astimezone(tz)
    days_ahead = (weekday - local.weekday()) % 7
    candidate = datetime.combine(local.date() + timedelta(days=days_ahead), time(hour), tzinfo=tz)
    if candidate <= local:
        candidate = datetime.combine(candidate.date() + timedelta(days=7), time(hour), tzinfo=tz)
    return candidate.astimezone(timezone.utc)


@dataclass
class QuotaUsage:
    count: int
    reset_at: datetime


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    used: int
    limit: int
    remaining: int
    reset_at: datetime


@dataclass(frozen=True)
class ConsumeResult:
    success: bool
    remaining: int
    used: int


class WeeklyQuotaTracker:
    """In-memory weekly request counter per key (chat id or user id).

    Every key's window ends at the same wall-clock boundary: ``reset_weekday``
    at ``reset_hour``:00 in ``timezone``. Records are created lazily, and reset
    either lazily on access or by the hourly sweep.
    """

    def __init__(
        self,
        limit: int,
        timezone_name: str = "Asia/Singapore",
        reset_weekday: int = 0,
        reset_hour: int = 0,
        name: str = "quota",
        clock: Optional[Callable[[], datetime]] = None,
        sweep_interval: float = 3600.0,
    ) -> None:
        self.limit = limit
        self.timezone = ZoneInfo(timezone_name)
        self.reset_weekday = reset_weekday
        self.reset_hour = reset_hour
        self.name = name
        self._clock = clock or _utcnow
        self._usage: Dict[Hashable, QuotaUsage] = {}
        self._lock = threading.Lock()
        self._sweep = PeriodicSweep(f"{name}-reset", sweep_interval, self.reset_expired)
        logger.info(f"[{name}] weekly limit {limit} requests, resets weekday={reset_weekday} {reset_hour:02d}:00 {timezone_name}")

    def next_reset(self, now: Optional[datetime] = None) -> datetime:
        return next_weekly_reset(now or self._clock(), self.timezone, self.reset_weekday, self.reset_hour)

    def _roll_forward(self, key: Hashable, usage: QuotaUsage, now: datetime) -> None:
        if now < usage.reset_at:
            return
        while usage.reset_at <= now:
            local = usage.reset_at.astimezone(self.timezone)
            usage.reset_at = datetime.combine(
                local.date() + timedelta(days=7), time(self.reset_hour), tzinfo=self.timezone
            ).astimezone(timezone.utc)
        usage.count = 0
        logger.info(f"[{self.name}] reset for {key}, next reset {usage.reset_at.isoformat()}")

    def _get_usage(self, key: Hashable) -> QuotaUsage:
        now = self._clock()
        usage = self._usage.get(key)
        if usage is None:
            usage = QuotaUsage(count=0, reset_at=self.next_reset(now))
            self._usage[key] = usage
        else:
            self._roll_forward(key, usage, now)
        return usage

    def check_limit(self, key: Hashable) -> LimitCheck:
        """Return the current state for ``key`` without consuming anything."""
        with self._lock:
            usage = self._get_usage(key)
            return LimitCheck(
                allowed=usage.count < self.limit,
                used=usage.count,
                limit=self.limit,
                remaining=max(0, self.limit - usage.count),
                reset_at=usage.reset_at,
            )

    def consume(self, key: Hashable) -> ConsumeResult:
        """Take one unit for ``key`` if any is left."""
        with self._lock:
            usage = self._get_usage(key)
            if usage.count >= self.limit:
                return ConsumeResult(success=False, remaining=0, used=usage.count)
            usage.count += 1
            remaining = self.limit - usage.count
        logger.info(f"[{self.name}] {key} usage: {usage.count}/{self.limit} ({remaining} remaining)")
        return ConsumeResult(success=True, remaining=remaining, used=usage.count)

    def reset_expired(self) -> int:
        """Reset every record whose window has elapsed. Returns how many were reset."""
        now = self._clock()
        reset = 0
        with self._lock:
            for key, usage in self._usage.items():
                if now >= usage.reset_at:
                    self._roll_forward(key, usage, now)
                    reset += 1
        return reset

    def seconds_until_reset(self, key: Hashable) -> float:
        reset_at = self.check_limit(key).reset_at
        return max(0.0, (reset_at - self._clock()).total_seconds())

    def start(self) -> None:
        self._sweep.start()

    async def stop(self) -> None:
        await self._sweep.stop()


class QuotaPolicy:
    """Chooses the quota key and tracker by chat type.

    Private chats are limited per user, every other chat type per chat.
    """

    def __init__(self, group: WeeklyQuotaTracker, private: WeeklyQuotaTracker) -> None:
        self.group = group
        self.private = private

    def select(self, chat_type: str, chat_id: int, user_id: int) -> Tuple[WeeklyQuotaTracker, int]:
        if chat_type == PRIVATE_CHAT:
            return self.private, user_id
        return self.group, chat_id

    def check_limit(self, chat_type: str, chat_id: int, user_id: int) -> LimitCheck:
        tracker, key = self.select(chat_type, chat_id, user_id)
        return tracker.check_limit(key)

    def consume(self, chat_type: str, chat_id: int, user_id: int) -> ConsumeResult:
        tracker, key = self.select(chat_type, chat_id, user_id)
        return tracker.consume(key)

    def seconds_until_reset(self, chat_type: str, chat_id: int, user_id: int) -> float:
        tracker, key = self.select(chat_type, chat_id, user_id)
        return tracker.seconds_until_reset(key)

    def start(self) -> None:
        self.group.start()
        self.private.start()

    async def stop(self) -> None:
        await self.group.stop()
        await self.private.stop()
