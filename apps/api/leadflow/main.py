from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadflow.api.routes import router as api_router
from leadflow.context import correlation_scope
from leadflow.core.config import get_settings
from leadflow.core.context import RequestContextMiddleware
from leadflow.core.database import SessionLocal, get_db
from leadflow.events import BusEvent, event_bus
from leadflow.logging import configure_logging
from leadflow.middleware.correlation_id import CorrelationIdMiddleware
from leadflow.middleware.request_logging import RequestLoggingMiddleware
from leadflow.otel import get_fastapi_server_request_hook, setup_otel
from leadflow.workflows.engine import EVENT_TRIGGER_TYPES, workflow_engine


configure_logging()
logger = logging.getLogger("leadflow.lifecycle")


def _on_system_started(event: BusEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


@contextmanager
def _workflow_session_scope():
    override = app.dependency_overrides.get(get_db)
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


def _on_lead_event(event: BusEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    if not get_settings().workflows_enabled:
        return
    envelope: dict[str, Any] = event.payload
    correlation_id = envelope.get("correlation_id")
    with correlation_scope(correlation_id if isinstance(correlation_id, str) else None):
        try:
            with _workflow_session_scope() as session:
                workflow_engine.handle_event(session, envelope)
        except Exception as exc:
            logger.exception("workflow.dispatch_failed", extra={"event_type": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in EVENT_TRIGGER_TYPES:
        event_bus.subscribe(event_name, _on_lead_event)
    event_bus.deliver("system.started", {"service": "api"})
    yield
    workflow_engine.close()


settings = get_settings()
app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
