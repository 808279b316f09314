from __future__ import annotations
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from app.config import settings
from app.db import SessionLocal
from app.errors import install_error_handlers
from app.logging_setup import configure_logging
from app.routes.system import router as system_router
from app.routes.challenges import router as challenges_router
from app.routes.matches import router as matches_router
from app.routes.ledger import router as ledger_router
from app.routes.wallet import router as wallet_router
from app.routes.prize_rules import router as prize_rules_router
from app.routes.stripe_webhooks import router as stripe_router
from app.services.notify import RedisPublisher, get_publisher
from app.services.sweeper import build_sweeper
import structlog

configure_logging()
log = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log.info("startup", env=settings.environment, version=settings.app_version, git_sha=settings.git_sha)
    app.state.sweeper = build_sweeper(SessionLocal, settings.sweeper_interval_seconds)
    if settings.sweeper_enabled:
        app.state.sweeper.start()
    yield
    # Shutdown
    await app.state.sweeper.stop()
    publisher = get_publisher()
    if isinstance(publisher, RedisPublisher):
        await publisher.close()
    log.info("shutdown")

app = FastAPI(
    title=f"{settings.app_display_name} API",
    version=settings.app_version,
    lifespan=lifespan,
    description=f"{settings.app_display_name} API for competitive matches, wallets and prizes",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "dev" else settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)

# Include routers (challenge routes first: /matches/create-challenge is a literal path)
app.include_router(system_router)
app.include_router(challenges_router)
app.include_router(matches_router)
app.include_router(ledger_router)
app.include_router(wallet_router)
app.include_router(prize_rules_router)
app.include_router(stripe_router)

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = rid
    structlog.contextvars.bind_contextvars(request_id=rid)
    try:
        response: Response = await call_next(request)
    finally:
        structlog.contextvars.clear_contextvars()
    response.headers["X-Request-ID"] = rid
    return response
