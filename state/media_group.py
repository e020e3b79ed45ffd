import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from state.timers import Debouncer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaGroupPhoto:
    file_id: str
    message_id: int
    caption: Optional[str] = None


@dataclass
class MediaGroupBatch:
    group_id: str
    chat_id: int
    user_id: int
    chat_type: str = "private"
    thread_id: Optional[int] = None
    photos: List[MediaGroupPhoto] = field(default_factory=list)

    @property
    def caption(self) -> Optional[str]:
        for photo in self.photos:
            if photo.caption:
                return photo.caption
        return None


class MediaGroupCollector:
    """Turns a burst of photos sharing one ``media_group_id`` into one batch.

    The first photo of an unseen group opens a collection window and its caller
    receives the whole batch when the window closes. Later photos of the same
    group are appended and their callers get ``None``.
    """

    def __init__(self, window: float = 1.0) -> None:
        self.window = window
        self._debouncer = Debouncer(window)
        self._groups: Dict[str, Tuple[MediaGroupBatch, asyncio.Future]] = {}

    @property
    def open_groups(self) -> int:
        return len(self._groups)

    async def add_photo(
        self,
        group_id: str,
        photo: MediaGroupPhoto,
        chat_id: int,
        user_id: int,
        chat_type: str = "private",
        thread_id: Optional[int] = None,
    ) -> Optional[MediaGroupBatch]:
        entry = self._groups.get(group_id)
        if entry is not None:
            entry[0].photos.append(photo)
            return None

        batch = MediaGroupBatch(
            group_id=group_id,
            chat_id=chat_id,
            user_id=user_id,
            chat_type=chat_type,
            thread_id=thread_id,
            photos=[photo],
        )
        waiter = asyncio.get_running_loop().create_future()
        self._groups[group_id] = (batch, waiter)
        self._debouncer.schedule(group_id, lambda: self._release(group_id))
        try:
            return await waiter
        except asyncio.CancelledError:
            self._debouncer.cancel(group_id)
            self._groups.pop(group_id, None)
            raise

    def _release(self, group_id: str) -> None:
        entry = self._groups.pop(group_id, None)
        if entry is None:
            return
        batch, waiter = entry
        logger.info(f"[media_group] {group_id} collected: {len(batch.photos)} photos")
        if not waiter.done():
            waiter.set_result(batch)

    def shutdown(self) -> None:
        self._debouncer.cancel_all()
        for _, waiter in self._groups.values():
            if not waiter.done():
                waiter.cancel()
        self._groups.clear()
