"""Application wiring — builds the services and the FastAPI app.

Storage backend follows DATABASE_URL: Postgres when set, in-memory
otherwise (development and tests). Sessions are always in-memory.

Lifespan background tasks:
- session sweep every minute (idle eviction)
- pending-payment reconciliation every MEDIABOT_RECONCILE_SECONDS
  (skipped when 0 or when M-Pesa is not configured)

Run with ``python -m mediabot.app`` or the ``mediabot`` console script.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import uvicorn
from fastapi import FastAPI

from mediabot import __version__
from mediabot.catalog.store import CatalogStore, InMemoryCatalog, InMemoryUserDirectory, UserDirectory
from mediabot.channels.protocol import MessagingChannel
from mediabot.channels.telegram import TelegramChannel
from mediabot.config import Settings, get_settings
from mediabot.conversation.engine import ConversationEngine
from mediabot.fulfillment.dispatcher import FulfillmentDispatcher
from mediabot.ledger.store import InMemoryLedger, Ledger
from mediabot.payments.mpesa import MpesaGateway, PaymentGateway
from mediabot.sessions.store import SessionStore
from mediabot.webhooks.handlers import register_routes
from mediabot.webhooks.router import EventRouter

logger = logging.getLogger(__name__)

_SESSION_SWEEP_SECONDS = 60


@dataclass
class Services:
    """Everything the routes and background tasks need."""
    settings: Settings
    sessions: SessionStore
    catalog: CatalogStore
    users: UserDirectory
    ledger: Ledger
    gateway: PaymentGateway
    channel: MessagingChannel
    engine: ConversationEngine
    dispatcher: FulfillmentDispatcher
    router: EventRouter


def build_services(
    settings: Settings,
    *,
    catalog: CatalogStore | None = None,
    users: UserDirectory | None = None,
    ledger: Ledger | None = None,
    gateway: PaymentGateway | None = None,
    channel: MessagingChannel | None = None,
    router: EventRouter | None = None,
) -> Services:
    """Wire the components. Any collaborator may be passed in (tests do)."""
    if settings.storage_backend == "postgres":
        from mediabot.catalog.postgres import PostgresCatalog, PostgresUserDirectory
        from mediabot.ledger.postgres import PostgresLedger

        catalog = catalog or PostgresCatalog(settings.database_url)
        users = users or PostgresUserDirectory(settings.database_url)
        ledger = ledger or PostgresLedger(settings.database_url)
    else:
        catalog = catalog or InMemoryCatalog()
        users = users or InMemoryUserDirectory()
        ledger = ledger or InMemoryLedger()

    gateway = gateway or MpesaGateway(settings.mpesa)
    channel = channel or TelegramChannel(settings.telegram_bot_token)
    sessions = SessionStore(idle_ttl_seconds=settings.session_idle_seconds)

    engine = ConversationEngine(
        sessions, catalog, users, ledger, gateway, channel,
        welcome_message=settings.welcome_message,
    )
    dispatcher = FulfillmentDispatcher(ledger, catalog, channel, gateway)
    return Services(
        settings=settings,
        sessions=sessions,
        catalog=catalog,
        users=users,
        ledger=ledger,
        gateway=gateway,
        channel=channel,
        engine=engine,
        dispatcher=dispatcher,
        router=router or EventRouter(settings.max_concurrency),
    )


async def _sweep_sessions(sessions: SessionStore) -> None:
    while True:
        await asyncio.sleep(_SESSION_SWEEP_SECONDS)
        sessions.cleanup_expired()


async def _reconcile_payments(dispatcher: FulfillmentDispatcher, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(dispatcher.reconcile_pending)
        except Exception:
            logger.exception("Pending-payment reconciliation failed")


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    if services is not None:
        settings = services.settings
    settings = settings or get_settings()
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        tasks = [asyncio.create_task(_sweep_sessions(services.sessions))]
        interval = settings.reconcile_interval_seconds
        if interval > 0 and settings.mpesa.is_configured:
            tasks.append(asyncio.create_task(_reconcile_payments(services.dispatcher, interval)))
        if not services.channel.is_configured:
            logger.warning("TELEGRAM_BOT_TOKEN not set, replies will not be sent")
        logger.info("mediabot %s started (storage=%s)", __version__, settings.storage_backend)
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await services.router.shutdown()
            close = getattr(services.gateway, "close", None)
            if close is not None:
                close()
            logger.info("mediabot stopped")

    app = FastAPI(title="mediabot", version=__version__, lifespan=lifespan)
    app.state.services = services
    register_routes(app, services)
    return app


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
