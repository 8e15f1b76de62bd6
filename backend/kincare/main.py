from contextlib import asynccontextmanager
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from kincare.api import family_access, health, maintenance
from kincare.api.errors import register_exception_handlers
from kincare.config import settings
from kincare.database import close_db, init_db
from kincare.logging import configure_logging, request_id_var
from kincare.services.family_access.scheduler import get_expiry_sweep_scheduler

configure_logging()
logger = logging.getLogger("kincare")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    logger.info("Starting %s", settings.app_name)
    try:
        await init_db()
        logger.info("Database initialized")
    except Exception:
        logger.exception("Failed to initialize database")
        raise

    scheduler = get_expiry_sweep_scheduler()
    await scheduler.start()

    yield

    logger.info("Shutting down %s", settings.app_name)
    await scheduler.stop()
    try:
        await close_db()
        logger.info("Database connections closed")
    except Exception:
        logger.exception("Error closing database")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    # KinCare Access API

    Lets a patient share scoped, time-limited and revocable access to their
    care information with family members.

    ## Features

    - **Invitations** - invite by email, preview, accept, decline, resend
    - **Permissions** - per-relationship capability flags and category allow-lists
    - **Emergency access** - time-boxed view-only grants
    - **Maintenance** - expiry sweep, membership index rebuild and consistency audit
    """,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id", str(uuid.uuid4()))
    request_id_var.set(request_id)
    response = await call_next(request)
    response.headers.setdefault("X-Request-Id", request_id)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
    )
    if not settings.debug:
        response.headers.setdefault(
            "Strict-Transport-Security",
            "max-age=63072000; includeSubDomains; preload",
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

app.include_router(health.router)
app.include_router(maintenance.router, prefix=settings.api_prefix)
app.include_router(family_access.router, prefix=settings.api_prefix)

register_exception_handlers(app)
