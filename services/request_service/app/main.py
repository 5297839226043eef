from contextlib import asynccontextmanager

from fastapi import FastAPI

from services.common import (
    DEFAULT_APP_NAME,
    EventProducer,
    ServiceSettings,
    build_app,
    configure_logging,
    create_tables,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
)

from .api.escalations import router as escalations_router
from .api.health import router as health_router
from .api.inventory import router as inventory_router
from .api.requests import router as requests_router
from .api.rules import router as rules_router
from .escalation import EscalationScheduler
from .events import RequestEventPublisher
from .ledger import InventoryLedger
from .locks import KeyedLock
from .models import Base
from .services import RequestService

SERVICE_NAME = "Request Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./request_service.db"


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create the Request Service FastAPI application."""

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        producer: EventProducer | None = None
        scheduler: EscalationScheduler | None = None
        app.state.session_factory = session_factory
        try:
            if resolved_settings.auto_create_tables:
                await create_tables(database_url, Base.metadata)
            if resolved_settings.event_bus_enabled:
                producer = EventProducer(client_id="request-service")
                await producer.connect()
            event_publisher = RequestEventPublisher(producer)
            ledger = InventoryLedger(session_factory, KeyedLock())
            app.state.event_publisher = event_publisher
            app.state.ledger = ledger
            app.state.request_service = RequestService(
                session_factory,
                ledger,
                locks=KeyedLock(),
                event_publisher=event_publisher,
            )
            scheduler = EscalationScheduler(
                session_factory,
                event_publisher,
                interval_seconds=resolved_settings.escalation_sweep_interval_seconds,
                batch_size=resolved_settings.escalation_batch_size,
            )
            app.state.escalation_scheduler = scheduler
            if resolved_settings.escalation_sweep_enabled:
                await scheduler.start()
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.event_publisher = None
            app.state.ledger = None
            app.state.request_service = None
            app.state.escalation_scheduler = None
            if producer is not None:
                await producer.close()
            await dispose_engines()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(requests_router)
    app.include_router(rules_router)
    app.include_router(inventory_router)
    app.include_router(escalations_router)
    return app


app = create_app()
