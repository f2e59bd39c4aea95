from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import Base, SessionLocal, engine
from app.core.events import InternalEvent, event_bus
from app.crm import models as crm_models  # noqa: F401
from app.crm.api import error_response
from app.crm.seed import seed_defaults
from app.logging import configure_logging
from app.middleware.correlation_id import CORRELATION_HEADER, CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
events_logger = logging.getLogger("app.events")
_subscriptions_registered = False

_logged_event_types = [
    "crm.lead.created",
    "crm.lead.updated",
    "crm.lead.deleted",
    "crm.lead.converted",
    "crm.contact.created",
    "crm.contact.updated",
    "crm.contact.deleted",
    "crm.company.created",
    "crm.company.updated",
    "crm.company.deleted",
    "crm.deal.created",
    "crm.deal.updated",
    "crm.deal.stage_changed",
    "crm.deal.closed_won",
    "crm.deal.closed_lost",
    "crm.deal.deleted",
    "crm.stage.created",
    "crm.stage.updated",
    "crm.stage.reordered",
    "crm.stage.deleted",
    "crm.activity.created",
    "crm.activity.updated",
    "crm.activity.completed",
    "crm.activity.deleted",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_crm_domain_event(event: InternalEvent) -> None:
    envelope: dict[str, Any] = event.payload
    payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    entity_id = next((value for key, value in payload.items() if key.endswith("_id") and value), None)
    events_logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "actor_user_id": envelope.get("actor_user_id"),
            "entity_id": entity_id,
        },
    )


def _validation_message(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"})
        text = str(error.get("msg", "Invalid value")).removeprefix("Value error, ")
        messages.append(f"{location}: {text}" if location else text)
    return "; ".join(messages) or "Invalid request"


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    settings = get_settings()
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _logged_event_types:
            event_bus.subscribe(event_name, _on_crm_domain_event)
        _subscriptions_registered = True

    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    if settings.seed_defaults:
        with SessionLocal() as session:
            seed_defaults(session, settings)

    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()
app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[CORRELATION_HEADER],
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(request, status_code=400, message=_validation_message(exc))


@app.exception_handler(StarletteHTTPException)
async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404 and exc.detail == "Not Found":
        message = "The requested resource was not found"
    else:
        message = str(exc.detail)
    response = error_response(request, status_code=exc.status_code, message=message)
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", exc_info=exc, extra={"path": request.url.path, "error": str(exc)})
    message = str(exc) if get_settings().show_error_details else "Internal server error"
    return error_response(request, status_code=500, message=message)


if settings.otel_enabled:
    setup_otel("crm-api", settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
