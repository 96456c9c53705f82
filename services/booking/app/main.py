import os
from contextlib import asynccontextmanager
from datetime import timedelta
from html import escape

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse

from app.core.database import Base, SessionLocal, engine
from app.core.errors import ConflictError, NotConfiguredError, NotFoundError, ProviderError, ValidationError
from app.routers import audit, bookings, graph_admin, graph_webhook, rooms
from app.schemas.booking_schema import BookingConflict, BookingConflictResponse
from app.services.graph_client import GraphClient
from app.services.reconciler import NotificationReconciler
from app.services.renewal import RenewalScheduler
from app.services.subscription_manager import SubscriptionManager
from shared import (
    EventPublisher,
    RequestContextLogMiddleware,
    configure_logging,
    create_health_router,
    ensure_database,
    load_service_config,
)

tags_metadata = [
    {"name": "Bookings", "description": "Room reservations and conflict checks."},
    {"name": "Rooms", "description": "Conference rooms and their Microsoft 365 mailboxes."},
    {"name": "Graph sync", "description": "Operator tooling for Outlook calendar subscriptions."},
    {"name": "Graph webhook", "description": "Change notifications pushed by Microsoft Graph."},
    {"name": "Audit", "description": "Who changed which booking, including automatic sync."},
]

_CONFIG = load_service_config("booking")
_LOGGER = configure_logging(_CONFIG.name)
_ROOT_PATH = os.getenv("APP_ROOT_PATH", "")
_EVENT_PUBLISHER = EventPublisher(_CONFIG.redis.url, _CONFIG.redis.stream) if _CONFIG.redis.url else None

_GRAPH_CLIENT = GraphClient(_CONFIG.graph)
_SUBSCRIPTION_MANAGER = SubscriptionManager(
    SessionLocal,
    _GRAPH_CLIENT,
    _CONFIG.graph,
    lookahead=timedelta(hours=_CONFIG.sync.renewal_lookahead_hours),
    expiration_minutes=_CONFIG.sync.subscription_minutes,
    publisher=_EVENT_PUBLISHER,
)
_RECONCILER = NotificationReconciler(SessionLocal, _GRAPH_CLIENT, _EVENT_PUBLISHER)
_RENEWAL_SCHEDULER = RenewalScheduler(
    _SUBSCRIPTION_MANAGER,
    interval=_CONFIG.sync.renewal_interval_seconds,
    initial_delay=_CONFIG.sync.renewal_initial_delay_seconds,
)


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    _LOGGER.info("service_starting", graph_configured=_CONFIG.graph.configured)
    await ensure_database(service_name=_CONFIG.name, metadata=Base.metadata, engine=engine)

    scheduler = app.state.renewal_scheduler
    if _CONFIG.graph.configured and not _CONFIG.graph.webhook_url:
        _LOGGER.warning("webhook_url_missing", detail="Set WEBHOOK_BASE_URL to create Graph subscriptions")
    scheduler.start()

    yield

    await scheduler.stop()
    await app.state.graph_client.aclose()
    _LOGGER.info("service_stopped")


app = FastAPI(
    title="Booking Service",
    version="0.1.0",
    description="Conference-room bookings kept in sync with Microsoft 365 room calendars.",
    openapi_tags=tags_metadata,
    root_path=_ROOT_PATH,
    lifespan=app_lifespan,
    docs_url=None,
    redoc_url="/redoc",
)

raw_origins = os.getenv("CORS_ORIGINS", "")
if raw_origins:
    origins = [o.strip() for o in raw_origins.split(",") if o.strip()]
else:
    if os.getenv("ENVIRONMENT", "development") not in ["development", "dev", "test"]:
        _LOGGER.error("cors_origins_missing", detail="Set CORS_ORIGINS in production")
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextLogMiddleware, logger=_LOGGER)

app.state.config = _CONFIG
app.state.event_publisher = _EVENT_PUBLISHER
app.state.graph_client = _GRAPH_CLIENT
app.state.subscription_manager = _SUBSCRIPTION_MANAGER
app.state.reconciler = _RECONCILER
app.state.renewal_scheduler = _RENEWAL_SCHEDULER


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    payload = BookingConflictResponse(
        success=False,
        error="conflict",
        message=str(exc),
        conflicts=[
            BookingConflict(
                booking_id=b.id,
                title=b.title,
                start_time=b.start_time,
                end_time=b.end_time,
            )
            for b in exc.conflicts
        ],
    )
    return JSONResponse(status_code=409, content=payload.model_dump(mode="json"))


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotConfiguredError)
async def not_configured_handler(request: Request, exc: NotConfiguredError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    return JSONResponse(
        status_code=502,
        content={"detail": "Microsoft Graph request failed", "provider_status": exc.status_code},
    )


def custom_openapi_schema():
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    schema["openapi"] = "3.0.3"
    app.openapi_schema = schema
    return app.openapi_schema


app.openapi = custom_openapi_schema


@app.get("/docs", include_in_schema=False)
async def custom_swagger_ui_html():
    return HTMLResponse(f"""
    <!DOCTYPE html>
    <html>
    <head>
        <link type="text/css" rel="stylesheet" href="https://cdn.jsdelivr.net/npm/swagger-ui-dist@5/swagger-ui.css">
        <title>{escape(app.title)} - Swagger UI</title>
    </head>
    <body>
        <div id="swagger-ui"></div>
        <script src="https://cdn.jsdelivr.net/npm/swagger-ui-dist@5/swagger-ui-bundle.js"></script>
        <script>
        const ui = SwaggerUIBundle({{
            url: window.location.pathname.replace(/\\/docs$/, '') + '/openapi.json',
            dom_id: '#swagger-ui',
            layout: "BaseLayout",
            deepLinking: true
        }})
        </script>
    </body>
    </html>
    """)


app.include_router(
    create_health_router(
        "booking",
        database_engine=engine,
        redis_url=_CONFIG.redis.url or None,
        extra_checks={"graph": lambda: True if _GRAPH_CLIENT.configured else None},
    )
)
app.include_router(bookings.router)
app.include_router(rooms.router)
app.include_router(graph_webhook.router)
app.include_router(graph_admin.router)
app.include_router(audit.router)


@app.get("/")
def root():
    return {
        "service": "booking",
        "status": "ok",
        "docs_url": "/docs",
        "config": {
            "redis_stream": _CONFIG.redis.stream,
            "graph_configured": _CONFIG.graph.configured,
            "webhook_url": _CONFIG.graph.webhook_url,
        },
    }
