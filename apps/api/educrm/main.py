from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from educrm.api.routes import router as api_router
from educrm.core.config import get_settings
from educrm.core.database import SessionLocal, get_db
from educrm.core.events import InternalEvent, event_bus
from educrm.crm.api import crm_error_handler, request_validation_error_handler
from educrm.crm.service import LeadEnrichmentService
from educrm.logging import configure_logging
from educrm.middleware.correlation_id import CorrelationIdMiddleware
from educrm.middleware.rate_limit import CrmMutationRateLimitMiddleware, build_rate_limit_store
from educrm.middleware.request_logging import RequestLoggingMiddleware
from educrm.otel import get_fastapi_server_request_hook, setup_otel
from educrm.tenancy.errors import CRMError


configure_logging()
logger = logging.getLogger("educrm.lifecycle")
lead_enrichment_service = LeadEnrichmentService()


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_lead_created(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    payload = envelope.get("payload") or {}
    try:
        lead_id = uuid.UUID(str(payload.get("lead_id")))
    except ValueError:
        return

    mode = get_settings().lead_enrichment_mode.lower()
    if mode == "disabled":
        return
    try:
        if mode == "celery":
            from educrm.core.celery_app import enrich_lead_task

            enrich_lead_task.delay(str(lead_id))
            return
        with _session_scope() as session:
            lead_enrichment_service.enrich(session, lead_id)
    except Exception as exc:
        logger.exception(
            "lead.enrichment_dispatch_failed",
            extra={"event_name": event.name, "lead_id": str(lead_id), "error": str(exc)[:500]},
        )


def register_subscriptions() -> None:
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe("crm.lead.created", _on_lead_created)


@asynccontextmanager
async def lifespan(app: FastAPI):
    register_subscriptions()
    event_bus.publish("system.started", {"service": "educrm-api"})
    yield


settings = get_settings()

app = FastAPI(title="EduCRM API", version="0.1.0", lifespan=lifespan)
app.state.rate_limit_store = build_rate_limit_store(settings)
app.add_exception_handler(CRMError, crm_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

# lifespan only runs under a managed client; handlers must exist without it
register_subscriptions()

if settings.otel_enabled:
    setup_otel("educrm-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
