"""
Production entry point. Run with:
    uvicorn verify_service.main:create_app --factory

The app is built on demand so importing this module never resolves the
signing secret; create_app refuses to build without one.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from verify_service.database import AsyncSessionLocal
from verify_service.errors import ServerMisconfigured, VerificationError
from verify_service.redis_client import close_redis, get_redis, init_redis
from verify_service.routers import verification
from verify_service.security import TokenCodec, resolve_signing_secret
from verify_service.services.rate_limiter import InMemoryRateLimiter
from verify_service.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "rate_limiter", None) is None:
        app.state.redis = await init_redis(app.state.settings)
    try:
        yield
    finally:
        await close_redis()


async def verification_error_handler(request: Request, exc: VerificationError):
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers,
    )


async def add_request_meta(request: Request, call_next):
    ip = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    request.state.meta = {"ip": ip, "user_agent": user_agent}
    response = await call_next(request)
    return response


async def health_check():
    """
    Liveness probe - always returns 200 OK.
    """
    return {"status": "ok"}


async def readiness_check(request: Request):
    """
    Readiness probe - checks DB and Redis connectivity.
    Returns 200 if all dependencies are healthy, 503 otherwise.
    """
    errors = []

    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        errors.append(f"Database: {str(e)}")

    if getattr(request.app.state, "rate_limiter", None) is None:
        try:
            redis = await get_redis(request)
            await redis.ping()
        except Exception as e:
            errors.append(f"Redis: {str(e)}")

    if errors:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "errors": errors},
        )

    return {"status": "ready", "database": "ok", "redis": "ok"}


def create_app(cfg=settings, signing_secret: str | None = None) -> FastAPI:
    """
    Build the production application.

    Refuses to start without a signing secret. The dev bypass is not wired
    here; see verify_service.dev.
    """
    logging.basicConfig(level=cfg.LOG_LEVEL)

    app = FastAPI(title="Resume verification gate", lifespan=lifespan)
    app.state.settings = cfg
    app.state.codec = TokenCodec(signing_secret or resolve_signing_secret(cfg))
    app.state.expose_tokens = False

    backend = cfg.RATE_LIMIT_BACKEND.strip().lower()
    if backend == "memory":
        # per process; undercounts when several instances serve traffic
        app.state.rate_limiter = InMemoryRateLimiter()
    elif backend != "redis":
        raise ServerMisconfigured(f"Unknown RATE_LIMIT_BACKEND {backend!r}")
    logger.info(f"Rate limiting backed by {backend}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_meta)
    app.add_exception_handler(VerificationError, verification_error_handler)

    app.include_router(verification.router)
    app.add_api_route("/health", health_check, methods=["GET"], tags=["Health"])
    app.add_api_route("/ready", readiness_check, methods=["GET"], tags=["Health"])
    return app
