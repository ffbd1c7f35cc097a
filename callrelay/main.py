import asyncio
import os
from dataclasses import dataclass
from typing import Callable

from fastapi import FastAPI, Request
from sqlalchemy.orm import Session

from callrelay import __version__
from callrelay.config import Settings, settings
from callrelay.database import SessionLocal, init_db
from callrelay.logging_config import get_logger, setup_logging
from callrelay.routers import skorozvon_webhook, telegram_webhook
from callrelay.schemas.telegram import TelegramUpdate
from callrelay.services.admin_service import MainAdmins
from callrelay.services.admin_session import AdminSessionStore
from callrelay.services.bot_service import BotService
from callrelay.services.dedup import DedupSet
from callrelay.services.delivery_service import DeliveryPipeline, PipelineConfig
from callrelay.services.scenario_cache import ScenarioCache
from callrelay.services.skorozvon_client import SkorozvonClient
from callrelay.services.telegram_service import TelegramService

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Call Relay",
    description="Relays successful Skorozvon calls to Telegram chats",
    version=__version__,
)

app.include_router(skorozvon_webhook.router)
app.include_router(telegram_webhook.router)


@dataclass
class AppServices:
    """Process-wide collaborators, built once at startup and shared by routers and loops."""

    settings: Settings
    telegram: TelegramService
    skorozvon: SkorozvonClient
    scenario_cache: ScenarioCache
    dedup: DedupSet
    sessions: AdminSessionStore
    pipeline: DeliveryPipeline
    bot: BotService

    @classmethod
    def build(cls, settings: Settings, session_factory: Callable[[], Session] = SessionLocal) -> "AppServices":
        telegram = TelegramService(settings.tg_bot_token)
        skorozvon = SkorozvonClient(
            base_url=settings.skorozvon_base_url,
            username=settings.skorozvon_username,
            api_key=settings.skorozvon_api_key,
            client_id=settings.skorozvon_client_id,
            client_secret=settings.skorozvon_client_secret,
        )
        scenario_cache = ScenarioCache(skorozvon)
        dedup = DedupSet(ttl_seconds=settings.dedup_ttl_seconds)
        sessions = AdminSessionStore(ttl_seconds=settings.admin_session_ttl_seconds)
        pipeline = DeliveryPipeline(
            PipelineConfig.from_settings(settings),
            session_factory,
            skorozvon,
            telegram,
            dedup,
        )
        bot = BotService(
            telegram,
            session_factory,
            MainAdmins.from_config(settings.main_admins),
            scenario_cache,
            sessions,
        )
        return cls(
            settings=settings,
            telegram=telegram,
            skorozvon=skorozvon,
            scenario_cache=scenario_cache,
            dedup=dedup,
            sessions=sessions,
            pipeline=pipeline,
            bot=bot,
        )

    async def aclose(self) -> None:
        await self.telegram.aclose()
        await self.skorozvon.aclose()


_background_tasks: list[asyncio.Task] = []


def _are_loops_enabled() -> bool:
    return not os.environ.get("PYTEST_CURRENT_TEST")


async def _telegram_polling_loop(services: AppServices) -> None:
    poll_logger = get_logger("telegram_polling")
    offset = None
    while True:
        try:
            updates = await services.telegram.get_updates(offset=offset)
            if not updates:
                # empty on server-side timeout as well as on errors
                await asyncio.sleep(1)
                continue
            for raw in updates:
                offset = raw.get("update_id", 0) + 1
                try:
                    update = TelegramUpdate(**raw)
                except Exception as exc:
                    poll_logger.warning(f"Skipping malformed update: {exc}")
                    continue
                await services.bot.handle_update(update)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            poll_logger.error(
                "Telegram polling loop failed",
                extra={"context": {"error": str(exc)}},
            )
            await asyncio.sleep(5)


async def _scenario_refresh_loop(services: AppServices, interval_seconds: float) -> None:
    refresh_logger = get_logger("scenario_refresh")
    while True:
        try:
            result = await services.scenario_cache.refresh()
            if not result.ok:
                refresh_logger.warning(
                    "Scenario refresh failed",
                    extra={"context": {"error": result.error, "error_code": result.error_code}},
                )
            expired = services.sessions.purge_expired()
            if expired:
                refresh_logger.info("Expired admin dialogs purged", extra={"context": {"count": expired}})
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            refresh_logger.error(
                "Scenario refresh loop failed",
                extra={"context": {"error": str(exc)}},
            )
            await asyncio.sleep(interval_seconds)


async def _configure_telegram_delivery(services: AppServices) -> None:
    """Register the push webhook when a public URL is known, otherwise fall back to long polling."""
    if not services.telegram.enabled:
        logger.warning("TG_BOT_TOKEN is not set, admin bot disabled")
        return

    public_url = services.settings.public_url.rstrip("/")
    if public_url:
        webhook_url = f"{public_url}/telegram-webhook"
        result = await services.telegram.set_webhook(webhook_url, services.settings.telegram_webhook_secret or None)
        if result.get("ok"):
            logger.info("Telegram webhook registered", extra={"context": {"url": webhook_url}})
        else:
            logger.error(
                "Telegram webhook registration failed",
                extra={"context": {"url": webhook_url, "error": result.get("description") or result.get("error")}},
            )
        return

    await services.telegram.delete_webhook()
    _background_tasks.append(asyncio.create_task(_telegram_polling_loop(services)))
    logger.info("Telegram long polling started")


@app.on_event("startup")
async def start_services() -> None:
    init_db()
    if getattr(app.state, "services", None) is None:
        app.state.services = AppServices.build(settings)
    services = app.state.services

    if not _are_loops_enabled():
        return

    await _configure_telegram_delivery(services)
    interval = services.settings.scenario_refresh_interval_seconds
    if interval > 0 and services.skorozvon.configured:
        _background_tasks.append(asyncio.create_task(_scenario_refresh_loop(services, interval)))
        logger.info("Scenario refresh loop started", extra={"context": {"interval_seconds": interval}})


@app.on_event("shutdown")
async def stop_services() -> None:
    for task in _background_tasks:
        task.cancel()
    for task in _background_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _background_tasks.clear()

    services = getattr(app.state, "services", None)
    if services is None:
        return
    await services.pipeline.shutdown(timeout=services.settings.shutdown_drain_seconds)
    await services.aclose()


@app.get("/health")
async def health(request: Request):
    services = request.app.state.services
    return {
        "status": "ok",
        "pending_deliveries": services.pipeline.pending_count,
        "scenarios": len(services.scenario_cache),
    }


def run() -> None:
    import uvicorn

    uvicorn.run(
        "callrelay.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_config=None,
    )
