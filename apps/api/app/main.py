from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.request_context import CorrelationIdMiddleware, RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_terminal_event_types = [
    "crm.lead.converted",
    "crm.lead.disqualified",
    "crm.opportunity.won",
    "crm.opportunity.lost",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"status": event.name})


def _on_record_closed(event: InternalEvent) -> None:
    payload = event.payload.get("payload", {}) if isinstance(event.payload, dict) else {}
    record_id = payload.get("lead_id") or payload.get("opportunity_id")
    logger.info(
        "record.closed",
        extra={"status": event.name, "record_id": record_id, "to_stage_id": payload.get("to_stage_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _terminal_event_types:
            event_bus.subscribe(event_name, _on_record_closed)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="CRM Pipeline API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("crm-pipeline-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
