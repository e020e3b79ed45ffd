import logging
from typing import List, NamedTuple, Optional, Protocol, Sequence

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, InputFile, LinkPreviewOptions
from telegram.constants import ParseMode
from telegram.error import BadRequest, Forbidden, TelegramError

logger = logging.getLogger(__name__)


class Button(NamedTuple):
    text: str
    callback_data: str


Keyboard = Sequence[Sequence[Button]]


class DeliveryError(Exception):
    """The chat platform refused or failed to deliver a message."""


class ChatTransport(Protocol):
    """What the pipeline needs from a chat platform. Every send names its destination."""

    @property
    def bot_username(self) -> str: ...

    async def send_message(
        self, chat_id: int, text: str, thread_id: Optional[int] = None, buttons: Optional[Keyboard] = None
    ) -> int: ...

    async def send_photo(
        self,
        chat_id: int,
        photo: bytes,
        caption: Optional[str] = None,
        thread_id: Optional[int] = None,
        buttons: Optional[Keyboard] = None,
        filename: str = "identification.jpg",
    ) -> int: ...

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> bool: ...

    async def delete_message(self, chat_id: int, message_id: Optional[int]) -> bool: ...

    async def download_file(self, file_id: str) -> bytes: ...

    async def answer_callback(self, callback_id: str, text: Optional[str] = None, show_alert: bool = False) -> None: ...


def to_markup(buttons: Optional[Keyboard]) -> Optional[InlineKeyboardMarkup]:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(b.text, callback_data=b.callback_data) for b in row] for row in buttons]
    )


class TelegramTransport:
    """ChatTransport over python-telegram-bot, HTML parse mode everywhere."""

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    @property
    def bot_username(self) -> str:
        return self.bot.username

    async def send_message(
        self, chat_id: int, text: str, thread_id: Optional[int] = None, buttons: Optional[Keyboard] = None
    ) -> int:
        try:
            msg = await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                message_thread_id=thread_id,
                parse_mode=ParseMode.HTML,
                reply_markup=to_markup(buttons),
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
        except TelegramError as e:
            raise DeliveryError(f"send_message to {chat_id} failed: {e}") from e
        return msg.message_id

    async def send_photo(
        self,
        chat_id: int,
        photo: bytes,
        caption: Optional[str] = None,
        thread_id: Optional[int] = None,
        buttons: Optional[Keyboard] = None,
        filename: str = "identification.jpg",
    ) -> int:
        try:
            msg = await self.bot.send_photo(
                chat_id=chat_id,
                photo=InputFile(photo, filename=filename),
                caption=caption or None,
                message_thread_id=thread_id,
                parse_mode=ParseMode.HTML,
                reply_markup=to_markup(buttons),
            )
        except TelegramError as e:
            raise DeliveryError(f"send_photo to {chat_id} failed: {e}") from e
        return msg.message_id

    async def edit_message(self, chat_id: int, message_id: int, text: str) -> bool:
        try:
            await self.bot.edit_message_text(text, chat_id=chat_id, message_id=message_id, parse_mode=ParseMode.HTML)
            return True
        except TelegramError as e:
            logger.info(f"[edit_message] {chat_id}/{message_id}: {e}")
            return False

    async def delete_message(self, chat_id: int, message_id: Optional[int]) -> bool:
        if not message_id:
            return False
        try:
            return await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except (BadRequest, Forbidden) as e:
            logger.debug(f"[delete_message] {chat_id}/{message_id}: {e}")
            return False
        except TelegramError as e:
            logger.info(f"[delete_message] {chat_id}/{message_id}: {e}")
            return False

    async def download_file(self, file_id: str) -> bytes:
        try:
            file = await self.bot.get_file(file_id)
            data = await file.download_as_bytearray()
        except TelegramError as e:
            raise DeliveryError(f"download of {file_id} failed: {e}") from e
        return bytes(data)

    async def answer_callback(self, callback_id: str, text: Optional[str] = None, show_alert: bool = False) -> None:
        try:
            await self.bot.answer_callback_query(callback_id, text=text, show_alert=show_alert)
        except BadRequest as e:
            if "query is too old" in str(e).lower():
                logger.warning(f"[answer_callback] expired callback: {e}")
            else:
                raise


def button_rows(rows: List[List[tuple]]) -> List[List[Button]]:
    return [[Button(text, data) for text, data in row] for row in rows]
