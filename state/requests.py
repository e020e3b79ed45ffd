import logging
import secrets
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from state.timers import PeriodicSweep

logger = logging.getLogger(__name__)


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.EXPIRED)


@dataclass
class BatchPhoto:
    index: int
    image: Optional[bytes] = None
    location: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Request:
    request_id: str
    user_id: int
    chat_id: int
    created_at: float
    message_id: Optional[int] = None
    thread_id: Optional[int] = None
    chat_type: str = "private"
    status: RequestStatus = RequestStatus.PENDING
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    buffer: Optional[bytes] = None
    prompt_message_id: Optional[int] = None
    status_message_id: Optional[int] = None
    waiting_for: Optional[str] = None
    error: Optional[BaseException] = None
    reason: Optional[str] = None
    # --- Поля стадий пайплайна
    target: Optional[str] = None
    location: Optional[str] = None
    is_media_group: bool = False
    batch_photos: List[BatchPhoto] = field(default_factory=list)

    @property
    def has_payload(self) -> bool:
        return self.buffer is not None or bool(self.batch_photos)

    @property
    def awaiting_input(self) -> bool:
        return self.status is RequestStatus.PENDING and self.has_payload


_PROTECTED = frozenset({"request_id", "user_id", "chat_id", "created_at", "started_at", "completed_at", "status"})
_FIELDS = frozenset(f.name for f in fields(Request))


@dataclass
class RequestStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    expired: int = 0


class RequestManager:
    """Owns every in-flight identification request.

    Requests are indexed by id, by user and by chat. A user holds at most
    ``max_requests_per_user`` live requests; creating one more evicts the
    user's oldest. The periodic sweep expires requests that overstay their
    pending or processing timeout and drops terminal leftovers after ``grace``.
    All methods are synchronous, so state is always consistent between awaits.
    """

    def __init__(
        self,
        request_timeout: float = 180.0,
        pending_timeout: float = 300.0,
        grace: float = 300.0,
        sweep_interval: float = 60.0,
        max_requests_per_user: int = 5,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.request_timeout = request_timeout
        self.pending_timeout = pending_timeout
        self.grace = grace
        self.max_requests_per_user = max_requests_per_user
        self._clock = clock or time.time
        self._requests: Dict[str, Request] = {}
        # dict вместо set: сохраняет порядок создания
        self._by_user: Dict[int, Dict[str, None]] = {}
        self.stats = RequestStats()
        self._sweep = PeriodicSweep("requests", sweep_interval, self.sweep)

    def _generate_id(self) -> str:
        while True:
            request_id = f"req_{int(self._clock() * 1000)}_{secrets.token_hex(4)}"
            if request_id not in self._requests:
                return request_id

    def create_request(
        self,
        user_id: int,
        chat_id: int,
        message_id: Optional[int] = None,
        thread_id: Optional[int] = None,
        chat_type: str = "private",
        **data: Any,
    ) -> Request:
        unknown = set(data) - _FIELDS
        if unknown:
            raise TypeError(f"unknown request fields: {', '.join(sorted(unknown))}")

        request_id = self._generate_id()

        live = [
            rid for rid in self._by_user.get(user_id, {})
            if rid in self._requests and not self._requests[rid].status.terminal
        ]
        while len(live) >= self.max_requests_per_user:
            oldest = live.pop(0)
            self.update_status(oldest, RequestStatus.EXPIRED, reason="superseded")
            self.remove(oldest)
            logger.warning(f"[{request_id}] removed oldest request {oldest} for user {user_id} (limit reached)")

        request = Request(
            request_id=request_id,
            user_id=user_id,
            chat_id=chat_id,
            created_at=self._clock(),
            message_id=message_id,
            thread_id=thread_id,
            chat_type=chat_type,
            **data,
        )
        self._requests[request_id] = request
        self._by_user.setdefault(user_id, {})[request_id] = None
        self.stats.total += 1
        logger.info(f"[{request_id}] request created for user {user_id} in chat {chat_id}")
        return request

    def get_request(self, request_id: str) -> Optional[Request]:
        return self._requests.get(request_id)

    def find_pending_request(self, user_id: int, chat_id: Optional[int] = None) -> Optional[Request]:
        """Most recent request of ``user_id`` that waits for a follow-up message.

        With ``chat_id`` only requests of that chat qualify, so a reply in one
        group never resumes a photo sent to another.
        """
        latest = None
        for request_id in self._by_user.get(user_id, {}):
            request = self._requests.get(request_id)
            if request is None or not request.awaiting_input:
                continue
            if chat_id is not None and request.chat_id != chat_id:
                continue
            if latest is None or request.created_at >= latest.created_at:
                latest = request
        return latest

    def update(self, request_id: str, **data: Any) -> Optional[Request]:
        """Merge pipeline fields into a request without touching its status."""
        request = self._requests.get(request_id)
        if request is None:
            logger.warning(f"[{request_id}] cannot update - request not found")
            return None
        for name, value in data.items():
            if name in _PROTECTED or name not in _FIELDS:
                logger.warning(f"[{request_id}] refusing to set field {name!r}")
                continue
            setattr(request, name, value)
        return request

    def update_status(self, request_id: str, status: RequestStatus, **data: Any) -> Optional[Request]:
        request = self._requests.get(request_id)
        if request is None:
            logger.warning(f"[{request_id}] cannot update status - request not found")
            return None
        current = request.status
        if current.terminal:
            logger.warning(f"[{request_id}] already {current.value}, ignoring {status.value}")
            return request
        if status is RequestStatus.PENDING and current is RequestStatus.PROCESSING:
            logger.warning(f"[{request_id}] cannot return to pending from processing")
            return request

        self.update(request_id, **data)
        request.status = status
        now = self._clock()

        if status is RequestStatus.PROCESSING and request.started_at is None:
            request.started_at = now
            request.waiting_for = None

        if status.terminal:
            request.completed_at = now
            duration = now - request.created_at
            if status is RequestStatus.COMPLETED:
                self.stats.completed += 1
                logger.info(f"[{request_id}] completed in {duration:.2f}s")
            elif status is RequestStatus.FAILED:
                self.stats.failed += 1
                logger.info(f"[{request_id}] failed after {duration:.2f}s: {request.error or request.reason or 'unknown error'}")
            else:
                self.stats.expired += 1
                logger.info(f"[{request_id}] expired after {duration:.2f}s ({request.reason or 'timeout'})")
        else:
            logger.info(f"[{request_id}] status: {status.value}")
        return request

    def remove(self, request_id: str) -> bool:
        request = self._requests.pop(request_id, None)
        if request is None:
            return False
        ids = self._by_user.get(request.user_id)
        if ids is not None:
            ids.pop(request_id, None)
            if not ids:
                del self._by_user[request.user_id]
        # Буферы могут быть большими, освобождаем сразу
        request.buffer = None
        request.batch_photos = []
        logger.info(f"[{request_id}] removed from tracking")
        return True

    def complete_and_remove(self, request_id: str) -> None:
        self.update_status(request_id, RequestStatus.COMPLETED)
        self.remove(request_id)

    def fail_and_remove(self, request_id: str, error: Optional[BaseException] = None, reason: Optional[str] = None) -> None:
        self.update_status(request_id, RequestStatus.FAILED, error=error, reason=reason)
        self.remove(request_id)

    def clear_user_requests(self, user_id: int) -> int:
        request_ids = list(self._by_user.get(user_id, {}))
        for request_id in request_ids:
            self.update_status(request_id, RequestStatus.EXPIRED, reason="cleared by user")
            self.remove(request_id)
        if request_ids:
            logger.info(f"[clear] cleared {len(request_ids)} requests for user {user_id}")
        return len(request_ids)

    def sweep(self) -> int:
        now = self._clock()
        cleaned = 0
        for request_id, request in list(self._requests.items()):
            if request.status.terminal:
                finished = request.completed_at or request.created_at
                if now - finished > self.grace:
                    self.remove(request_id)
                    cleaned += 1
            elif request.status is RequestStatus.PENDING:
                if now - request.created_at > self.pending_timeout:
                    self.update_status(request_id, RequestStatus.EXPIRED, reason="timeout")
                    self.remove(request_id)
                    cleaned += 1
            elif now - (request.started_at or request.created_at) > self.request_timeout:
                self.update_status(request_id, RequestStatus.EXPIRED, reason="processing timeout")
                self.remove(request_id)
                cleaned += 1
        if cleaned:
            logger.info(f"[requests] cleanup removed {cleaned} requests")
        return cleaned

    def get_stats(self) -> Dict[str, int]:
        return {
            "total": self.stats.total,
            "completed": self.stats.completed,
            "failed": self.stats.failed,
            "expired": self.stats.expired,
            "active_requests": len(self._requests),
            "active_users": len(self._by_user),
        }

    def start(self) -> None:
        self._sweep.start()

    async def stop(self) -> None:
        await self._sweep.stop()
        logger.info(f"[requests] shutdown, final stats: {self.get_stats()}")
