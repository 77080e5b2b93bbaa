"""
Interview Ledger — FastAPI Application Entry Point

POST /v1/ledger/reserve-interview           → credit reservation
POST /v1/ledger/finalize-interview          → session scoring + completion
POST /v1/admin/reconcile-stuck-interviews   → stuck-interview sweep
GET  /v1/ledger/health                      → health check
GET  /docs                                  → OpenAPI / Swagger UI
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from app.api.admin_endpoint import router as admin_router
from app.api.ledger_endpoint import router as ledger_router
from app.core.config import Settings, get_settings
from app.core.errors import InternalStoreError, LedgerError
from app.ledger.memory import MemoryLedgerStore
from app.ledger.store import LedgerStore
from app.scoring.profiles import ProfileRegistry
from app.services.event_publisher import stop_publisher

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.ConsoleRenderer() if get_settings().app_env == "development"
        else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(get_settings().log_level),
)
logger = structlog.get_logger()


async def build_store(settings: Settings) -> LedgerStore:
    if settings.ledger_backend == "memory":
        return MemoryLedgerStore()
    if settings.ledger_backend == "sql":
        from app.ledger.sql import SqlLedgerStore
        return SqlLedgerStore.from_url(settings.database_url)
    raise ValueError(f"Unknown LEDGER_BACKEND '{settings.ledger_backend}' (expected memory | sql)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    app.state.store = await build_store(settings)
    app.state.profiles = ProfileRegistry.load(
        settings.scoring_profiles_path, default=settings.default_scoring_profile,
    )
    logger.info(
        "ledger_starting",
        backend=settings.ledger_backend,
        profiles=app.state.profiles.names,
        default_profile=settings.default_scoring_profile,
    )
    yield
    await stop_publisher()
    await app.state.store.close()
    logger.info("ledger_shutting_down")


app = FastAPI(
    title="Interview Ledger",
    description="Interview credit ledger, lifecycle and scoring service",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (dashboards + internal tools) ──
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_methods=["POST", "GET", "PATCH"],
    allow_headers=["*"],
)


# ── Error mapping ──
@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if isinstance(exc, InternalStoreError):
        logger.error(
            "internal_store_error",
            path=request.url.path,
            method=request.method,
            error=exc.message,
            cause=repr(exc.cause),
            **exc.details,
        )
    else:
        logger.info("ledger_error", path=request.url.path, code=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Prometheus metrics ──
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── Routes ──
app.include_router(ledger_router)
app.include_router(admin_router)


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "interview-ledger",
        "version": "1.0.0",
        "docs": "/docs",
        "reserve": "POST /v1/ledger/reserve-interview",
    }
