"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path

from aiohttp import ClientSession, web

from lumepay_webhooks.api.router import setup_routes
from lumepay_webhooks.db import pool as db_pool
from lumepay_webhooks.db.migrations import create_migration_runner
from lumepay_webhooks.logging_config import configure_logging
from lumepay_webhooks.middleware.trace import create_trace_middleware
from lumepay_webhooks.repositories import (
    DeliveryStore,
    SubscriptionStore,
    WebhookDeliveryRepository,
    WebhookSubscriptionRepository,
)
from lumepay_webhooks.services.dependencies import WEBHOOK_SERVICES_KEY, build_services
from lumepay_webhooks.settings import settings
from lumepay_webhooks.workers import build_worker

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
MIGRATION_PATHS = [PROJECT_ROOT / "migrations", Path("/app/migrations")]

_HTTP_SESSION_KEY = "webhook_http_session"
_WORKER_KEY = "webhook_worker"


async def healthcheck(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})


def create_app(
    *,
    subscriptions: SubscriptionStore | None = None,
    deliveries: DeliveryStore | None = None,
    run_worker: bool | None = None,
) -> web.Application:
    """Build the service app.

    Passing both stores skips the Postgres pool and migrations.
    """
    use_database = subscriptions is None or deliveries is None
    if run_worker is None:
        run_worker = settings.worker_enabled

    app = web.Application()
    app.middlewares.append(create_trace_middleware(settings.app_name))
    app.router.add_get("/health", healthcheck)
    setup_routes(app)

    async def start_services(app: web.Application) -> None:
        session = ClientSession()
        app[_HTTP_SESSION_KEY] = session
        if use_database:
            pool = await db_pool.get_pool()
            subs_store: SubscriptionStore = WebhookSubscriptionRepository(pool)
            delivery_store: DeliveryStore = WebhookDeliveryRepository(pool)
        else:
            assert subscriptions is not None and deliveries is not None
            subs_store, delivery_store = subscriptions, deliveries
        services = build_services(subs_store, delivery_store, session, settings)
        app[WEBHOOK_SERVICES_KEY] = services
        if run_worker:
            worker = build_worker(services, settings)
            app[_WORKER_KEY] = worker
            await worker.start(app)

    async def stop_services(app: web.Application) -> None:
        worker = app.get(_WORKER_KEY)
        if worker is not None:
            await worker.stop(app)
        services = app.get(WEBHOOK_SERVICES_KEY)
        if services is not None:
            await services.notifier.drain()
        session = app.get(_HTTP_SESSION_KEY)
        if session is not None:
            await session.close()

    if use_database:
        app.on_startup.append(db_pool.init_pool)
        app.on_startup.append(
            create_migration_runner(str(settings.database_url), MIGRATION_PATHS)
        )
    app.on_startup.append(start_services)
    app.on_cleanup.append(stop_services)
    if use_database:
        app.on_cleanup.append(db_pool.close_pool)
    return app


def main() -> None:
    configure_logging(settings.log_level)
    web.run_app(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
