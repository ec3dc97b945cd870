from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.events import InternalEvent, event_bus
from app.crm.seed import ensure_catalog
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_lead_event(event: InternalEvent) -> None:
    logger.debug("pipeline_event", extra={"event_name": event.name, "lead_id": event.lead_id})


def _seed_catalog() -> None:
    with SessionLocal() as session:
        created = ensure_catalog(session)
    logger.info("catalog.seeded", extra={"outcome": ", ".join(f"{key}={count}" for key, count in created.items())})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe("crm.lead.*", _on_lead_event)
        _subscriptions_registered = True
    if get_settings().seed_catalog_on_startup:
        _seed_catalog()
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Lead Pipeline API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("pipeline-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
