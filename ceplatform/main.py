"""
ceplatform/main.py
Application factory

create_app() wires one Database, one EventPublisher and the EngineSettings
onto app.state; request handlers build their services from those.
"""
import logging
import random
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from ceplatform.config.settings import EngineSettings, load_settings
from ceplatform.core.clock import Clock, utcnow
from ceplatform.database import Database
from ceplatform.errors import APIError, ErrorCode, get_error_summary
from ceplatform.events.publisher import EventPublisher, InMemoryEventPublisher
from ceplatform.routes import router
from ceplatform.routes.quiz import configure_limiter

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def configure_logging(level: int = logging.INFO):
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()]
    )


def create_app(
    settings: Optional[EngineSettings] = None,
    database: Optional[Database] = None,
    publisher: Optional[EventPublisher] = None,
    clock: Clock = utcnow,
    rng: Optional[random.Random] = None,
) -> FastAPI:
    settings = settings or load_settings()
    owns_database = database is None
    database = database or Database(settings.database_url)
    publisher = publisher or InMemoryEventPublisher()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting progression engine...")
        try:
            await database.init_db()
            logger.info("[STARTUP] schema ready")
        except Exception as e:
            logger.error(f"[STARTUP] database unavailable: {e}")
            raise

        yield

        logger.info("Shutting down progression engine...")
        await publisher.close()
        if owns_database:
            await database.dispose()
            logger.info("[SHUTDOWN] engine disposed")

    development = settings.environment == "development"
    app = FastAPI(
        title="CE Progression Engine",
        description="Sequential learning progression and regulated assessment engine",
        version=VERSION,
        docs_url="/docs" if development else None,
        redoc_url="/redoc" if development else None,
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.database = database
    app.state.publisher = publisher
    app.state.clock = clock
    app.state.rng = rng

    app.state.limiter = configure_limiter(settings)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    origins = list(settings.allowed_origins) or [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"[422] {request.method} {request.url.path}: {exc.errors()}")
        error_details = [
            {"loc": list(error.get("loc", [])), "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "error": "Validation Error",
                "message": "Request validation failed",
                "code": ErrorCode.VALIDATION_ERROR,
                "details": {"errors": error_details}
            }
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"[{exc.status_code}] {request.method} {request.url.path}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": "Error",
                "message": str(exc.detail),
                "code": ErrorCode.NOT_FOUND if exc.status_code == 404 else ErrorCode.INVALID_INPUT
            }
        )

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        logger.warning(f"[{exc.code}] {request.method} {request.url.path}: {exc.message}")
        return exc.to_response()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        log_id = str(uuid.uuid4())[:8]
        logger.error(f"[UNHANDLED {log_id}] {request.method} {request.url.path}: {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Internal Error",
                "message": "An unexpected error occurred. Please try again later.",
                "code": ErrorCode.INTERNAL_ERROR,
                "details": {"log_id": log_id}
            }
        )

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        database_ok = True
        try:
            await request.app.state.database.ping()
        except Exception as e:
            logger.error(f"Health check database ping failed: {e}")
            database_ok = False
        return {
            "status": "healthy" if database_ok else "degraded",
            "environment": settings.environment,
            "database": database_ok,
            "version": VERSION
        }

    @app.get("/api/errors/health", tags=["Health"])
    async def error_handling_health():
        return get_error_summary()

    app.include_router(router)
    return app
