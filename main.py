import logging
import time
import traceback
from typing import Optional

import aiohttp
from fastapi import FastAPI, Request
from openai import AsyncOpenAI
from telegram import Update
from telegram.ext import Application

from biodiversity import BiodiversityClient
from bot import BotHandlers, add_handlers, register_commands
from limits.rate_limit import QuotaPolicy, WeeklyQuotaTracker
from photo_handler import IdentificationPipeline
from service import AnimalClassifier
from settings import Settings
from state.media_group import MediaGroupCollector
from state.requests import RequestManager
from state.result_cache import ResultCache
from state.timers import TaskSupervisor
from transport import TelegramTransport

# --- Конфиги
settings = Settings()

# --- Логирование
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


class _TokenFilter(logging.Filter):
    def __init__(self, token: str) -> None:
        super().__init__()
        self.token = token or ""

    def filter(self, record: logging.LogRecord) -> bool:
        if self.token:
            token_mask = "<TOKEN>"
            record.msg = str(record.msg).replace(self.token, token_mask)
            if record.args:
                record.args = tuple(
                    str(arg).replace(self.token, token_mask) if isinstance(arg, str) else arg
                    for arg in record.args
                )
        return True


for _handler in logging.getLogger().handlers:
    _handler.addFilter(_TokenFilter(settings.bot_token))
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpx").propagate = False


class Services:
    """Everything built once at startup and torn down at shutdown."""

    def __init__(self, settings: Settings, application: Application, session: aiohttp.ClientSession) -> None:
        self.settings = settings
        self.application = application
        self.session = session
        self.started_at = time.time()
        self.tasks = TaskSupervisor("bot")
        self.transport = TelegramTransport(application.bot)
        self.quota = QuotaPolicy(
            group=WeeklyQuotaTracker(
                settings.group_weekly_limit,
                settings.limit_timezone,
                settings.limit_reset_weekday,
                settings.limit_reset_hour,
                name="group-quota",
            ),
            private=WeeklyQuotaTracker(
                settings.private_weekly_limit,
                settings.limit_timezone,
                settings.limit_reset_weekday,
                settings.limit_reset_hour,
                name="private-quota",
            ),
        )
        self.requests = RequestManager(
            request_timeout=settings.request_timeout,
            pending_timeout=settings.pending_timeout,
            grace=settings.request_grace,
            sweep_interval=settings.request_sweep_interval,
            max_requests_per_user=settings.max_requests_per_user,
        )
        self.results = ResultCache(settings.result_ttl, settings.cache_sweep_interval, name="results")
        self.delivered_images = ResultCache(settings.result_ttl, settings.cache_sweep_interval, name="hd-images")
        self.collector = MediaGroupCollector(settings.media_group_window)
        self.classifier = AnimalClassifier(
            AsyncOpenAI(api_key=settings.openai_api_key, max_retries=0),
            [settings.model, settings.fallback_model],
            attempts=settings.classifier_attempts,
            backoff=settings.classifier_backoff,
            timeout=settings.classifier_timeout,
        )
        self.biodiversity = BiodiversityClient(session, settings.user_agent, settings.ebird_api_key)
        self.pipeline = IdentificationPipeline(
            self.transport,
            self.requests,
            self.quota,
            self.results,
            self.delivered_images,
            self.collector,
            self.classifier,
            self.biodiversity,
            tasks=self.tasks,
        )
        self.handlers = BotHandlers(self.pipeline, self.transport)

    def start_sweeps(self) -> None:
        self.requests.start()
        self.quota.start()
        self.results.start()
        self.delivered_images.start()

    async def stop_sweeps(self) -> None:
        self.collector.shutdown()
        await self.tasks.shutdown()
        await self.results.stop()
        await self.delivered_images.stop()
        await self.quota.stop()
        await self.requests.stop()

    def stats(self) -> dict:
        return {
            "uptime": round(time.time() - self.started_at),
            "requests": self.requests.get_stats(),
            "cached_results": len(self.results),
            "open_media_groups": self.collector.open_groups,
        }


# --- Telegram + FastAPI
app = FastAPI()
services: Optional[Services] = None


@app.on_event("startup")
async def startup():
    global services
    try:
        application = Application.builder().token(settings.bot_token).concurrent_updates(True).build()
        session = aiohttp.ClientSession()
        services = Services(settings, application, session)
        add_handlers(application, services.handlers)

        await application.initialize()
        await application.start()
        services.start_sweeps()
        await register_commands(application)

        if settings.webhook_url:
            await application.bot.set_webhook(settings.webhook_url)
            logger.info("Webhook установлен.")
        else:
            await application.bot.delete_webhook()
            await application.updater.start_polling()
            logger.info("WEBHOOK_URL не задан, работаю через polling.")
    except Exception as e:
        logger.error(f"[startup] Ошибка при инициализации: {e}\n{traceback.format_exc()}")


@app.on_event("shutdown")
async def shutdown():
    if services is None:
        return
    try:
        application = services.application
        if application.updater and application.updater.running:
            await application.updater.stop()
        await services.stop_sweeps()
        if application.running:
            await application.stop()
        await application.shutdown()
        logger.info(f"[shutdown] requests: {services.requests.get_stats()}")
    except Exception as e:
        logger.error(f"[shutdown] Ошибка: {e}\n{traceback.format_exc()}")
    finally:
        await services.session.close()


@app.get("/")
async def root():
    return {"status": "ok", "service": "wildlife-id-bot"}


@app.get("/health")
async def health():
    if services is None:
        return {"status": "starting"}
    return {"status": "ok", **services.stats()}


@app.post("/webhook")
async def telegram_webhook(request: Request):
    try:
        if services is None or not services.application.running:
            logger.warning("Приложение не готово.")
            return {"ok": False, "error": "Not initialized"}
        data = await request.json()
        update = Update.de_json(data, services.application.bot)
        # Обработка идёт в фоне, Telegram получает ответ сразу
        await services.application.update_queue.put(update)
        return {"ok": True}
    except Exception as e:
        logger.error(f"[webhook] Ошибка: {e}\n{traceback.format_exc()}")
        return {"ok": False, "error": str(e)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=settings.port)
