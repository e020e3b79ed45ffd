import functools
import logging
import traceback
from typing import Optional, Tuple

from telegram import (
    BotCommand,
    BotCommandScopeAllGroupChats,
    BotCommandScopeAllPrivateChats,
    MenuButtonCommands,
    Message,
    Update,
)
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

import card_formatter as cards
from photo_handler import IdentificationPipeline, IncomingPhoto
from transport import ChatTransport, DeliveryError, button_rows

logger = logging.getLogger(__name__)

BOT_COMMANDS = [
    BotCommand("start", "Приветствие"),
    BotCommand("help", "Как пользоваться"),
    BotCommand("identify", "Распознать фото (ответом на сообщение)"),
    BotCommand("skip", "Пропустить вопрос"),
    BotCommand("limit", "Недельный лимит"),
    BotCommand("menu", "Меню"),
    BotCommand("clear", "Очистить чат"),
]


def destination(message: Message) -> Tuple[int, Optional[int]]:
    thread_id = message.message_thread_id if message.is_topic_message else None
    return message.chat_id, thread_id


def guarded(handler):
    """Dispatch boundary: a failing handler is logged and the user gets a short apology."""

    @functools.wraps(handler)
    async def wrapper(self: "BotHandlers", update: Update, context: ContextTypes.DEFAULT_TYPE):
        try:
            return await handler(self, update, context)
        except Exception as e:
            logger.error(f"[{handler.__name__}] Ошибка: {e}\n{traceback.format_exc()}")
            await self.apologize(update)

    return wrapper


class BotHandlers:
    def __init__(self, pipeline: IdentificationPipeline, transport: ChatTransport) -> None:
        self.pipeline = pipeline
        self.transport = transport

    async def apologize(self, update: Update) -> None:
        try:
            if update.callback_query:
                await self.transport.answer_callback(update.callback_query.id, cards.CALLBACK_ERROR)
            elif update.effective_message:
                chat_id, thread_id = destination(update.effective_message)
                await self.transport.send_message(chat_id, cards.GENERIC_ERROR, thread_id=thread_id)
        except (TelegramError, DeliveryError) as e:
            logger.error(f"[apologize] {e}")

    async def _reply(self, message: Message, text: str, buttons=None) -> None:
        chat_id, thread_id = destination(message)
        await self.transport.send_message(chat_id, text, thread_id=thread_id, buttons=buttons)

    # --- Команды
    @guarded
    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        logger.info(f"[start] from user {update.effective_user.id}")
        await self._reply(update.effective_message, cards.START)

    @guarded
    async def help(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._reply(update.effective_message, cards.HELP)

    @guarded
    async def info(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._reply(update.effective_message, cards.INFO)

    @guarded
    async def menu(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._reply(update.effective_message, cards.MENU, buttons=button_rows(cards.MENU_BUTTONS))

    @guarded
    async def limit(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        chat = update.effective_chat
        await self._reply(
            update.effective_message, self.pipeline.limit_report(chat.type, chat.id, update.effective_user.id)
        )

    @guarded
    async def clear(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        chat_id, thread_id = destination(message)
        await self.pipeline.clear_chat(chat_id, update.effective_user.id, message.message_id, thread_id)

    @guarded
    async def skip(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        resumed = await self.pipeline.resume(update.effective_user.id, message.chat_id, None, message.message_id)
        if not resumed:
            await self._reply(message, cards.NOTHING_TO_SKIP)

    @guarded
    async def identify(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        replied = message.reply_to_message
        if not replied or not replied.photo:
            await self._reply(message, cards.IDENTIFY_HOWTO)
            return
        chat_id, thread_id = destination(message)
        target = " ".join(context.args or []) or replied.caption
        await self.pipeline.handle_photo(
            IncomingPhoto(
                chat_id=chat_id,
                user_id=update.effective_user.id,
                message_id=replied.message_id,
                file_id=replied.photo[-1].file_id,
                chat_type=update.effective_chat.type,
                thread_id=thread_id,
                caption=target,
            )
        )

    # --- Сообщения
    @guarded
    async def photo(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        chat_id, thread_id = destination(message)
        await self.pipeline.handle_photo(
            IncomingPhoto(
                chat_id=chat_id,
                user_id=update.effective_user.id,
                message_id=message.message_id,
                file_id=message.photo[-1].file_id,
                chat_type=update.effective_chat.type,
                thread_id=thread_id,
                caption=message.caption,
                media_group_id=message.media_group_id,
            )
        )

    @guarded
    async def text(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        await self.pipeline.resume(update.effective_user.id, message.chat_id, message.text, message.message_id)

    # --- Кнопки
    @guarded
    async def callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        data = query.data or ""
        message = query.message

        if data == "menu_clear":
            await self.transport.answer_callback(query.id, cards.MENU_CLEAR_ALERT, show_alert=True)
            return
        if data.startswith("menu_"):
            await self.transport.answer_callback(query.id)
            if message is None:
                return
            chat = message.chat
            texts = {
                "menu_start": cards.START,
                "menu_help": cards.HELP,
                "menu_identify": cards.IDENTIFY_HOWTO,
            }
            if data == "menu_limit":
                text = self.pipeline.limit_report(chat.type, chat.id, query.from_user.id)
            else:
                text = texts.get(data)
            if text:
                await self._reply(message, text)
            return

        action, name = cards.parse_callback_payload(data)
        if action not in ("details", "similar") or not name or message is None:
            await self.transport.answer_callback(query.id)
            return
        answer, alert = await self.pipeline.follow_up(action, name, message.chat.id, query.from_user.id)
        await self.transport.answer_callback(query.id, answer, show_alert=alert)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error(f"[error_handler] update {update} caused error: {context.error}", exc_info=context.error)


def add_handlers(application: Application, handlers: BotHandlers) -> None:
    application.add_handler(CommandHandler("start", handlers.start))
    application.add_handler(CommandHandler("help", handlers.help))
    application.add_handler(CommandHandler("info", handlers.info))
    application.add_handler(CommandHandler("menu", handlers.menu))
    application.add_handler(CommandHandler("limit", handlers.limit))
    application.add_handler(CommandHandler("clear", handlers.clear))
    application.add_handler(CommandHandler("skip", handlers.skip))
    application.add_handler(CommandHandler("identify", handlers.identify))
    application.add_handler(MessageHandler(filters.PHOTO & filters.UpdateType.MESSAGE, handlers.photo))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND & filters.UpdateType.MESSAGE, handlers.text))
    application.add_handler(CallbackQueryHandler(handlers.callback))
    application.add_error_handler(error_handler)


async def register_commands(application: Application) -> None:
    """Command list for private chats, all groups and the default scope, plus the menu button."""
    bot = application.bot
    try:
        await bot.set_my_commands(BOT_COMMANDS)
        await bot.set_my_commands(BOT_COMMANDS, scope=BotCommandScopeAllGroupChats())
        await bot.set_my_commands(BOT_COMMANDS, scope=BotCommandScopeAllPrivateChats())
        await bot.set_chat_menu_button(menu_button=MenuButtonCommands())
        logger.info("[register_commands] commands registered")
    except TelegramError as e:
        logger.error(f"[register_commands] failed: {e}")
