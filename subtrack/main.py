from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from subtrack import __version__, events
from subtrack.api.routes import router as api_router
from subtrack.core.config import get_settings
from subtrack.events import InternalEvent, event_bus
from subtrack.logging import configure_logging
from subtrack.middleware.request_context import RequestContextMiddleware
from subtrack.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("subtrack.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"status": event.payload.get("service")})


def _on_price_increased(event: InternalEvent) -> None:
    logger.info("price_increase_signal", extra={"subscription_id": event.payload.get("subscription_id")})


def _on_reminder_event(event: InternalEvent) -> None:
    logger.info(
        event.name,
        extra={
            "subscription_id": event.payload.get("subscription_id"),
            "reminder_id": event.payload.get("reminder_id"),
            "reminder_type": event.payload.get("reminder_type"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe(events.SYSTEM_STARTED, _on_system_started)
    event_bus.subscribe(events.PRICE_INCREASED, _on_price_increased)
    for event_name in events.REMINDER_EVENT_TYPES:
        event_bus.subscribe(event_name, _on_reminder_event)
    event_bus.publish(events.SYSTEM_STARTED, {"service": "api"})
    yield


app = FastAPI(title="Subtrack API", version=__version__, lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("subtrack", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
