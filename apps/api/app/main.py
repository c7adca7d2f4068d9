from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.automation.adapter import MalformedEventError
from app.automation.engine import automation_engine
from app.core.celery_app import evaluate_automation_event_task
from app.core.config import get_settings
from app.core.events import InternalEvent, event_bus
from app.core.database import get_db, worker_session
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import AutomationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscribed_event_types: list[str] = []


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _automation_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        with worker_session() as session:
            yield session
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


def _on_domain_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    settings = get_settings()
    try:
        if settings.automation_async_ingest:
            evaluate_automation_event_task.delay(envelope)
            return
        with _automation_session_scope() as session:
            automation_engine.evaluate_envelope(session, envelope)
    except MalformedEventError as exc:
        logger.warning("automation_event_rejected", extra={"event_name": event.name, "reason": ", ".join(exc.missing)})
    except Exception as exc:
        logger.exception("automation_event_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


def register_event_subscriptions() -> list[str]:
    settings = get_settings()
    for event_name in settings.automation_trigger_events:
        if event_name not in _subscribed_event_types:
            event_bus.subscribe(event_name, _on_domain_event)
            _subscribed_event_types.append(event_name)
    return list(_subscribed_event_types)


def unregister_event_subscriptions() -> None:
    while _subscribed_event_types:
        event_bus.unsubscribe(_subscribed_event_types.pop(), _on_domain_event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    register_event_subscriptions()
    event_bus.publish("system.started", {"service": "api"})
    yield
    unregister_event_subscriptions()
    event_bus.unsubscribe("system.started", _on_system_started)


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(AutomationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("automation-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
