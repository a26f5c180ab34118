"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from allchat.api.v1.chats_router import router as chats_router
from allchat.api.v1.guest_router import router as guest_router
from allchat.api.v1.key_router import router as key_router
from allchat.api.v1.share_router import router as share_router
from allchat.api.v1.stream_router import router as stream_router
from allchat.core.config import settings
from allchat.core.database import Base, engine
from allchat.core.exceptions import (
    AppException,
    app_exception_handler,
    validation_exception_handler,
)
from allchat.core.middleware import AuthMiddleware
from allchat.core.rate_limit import limiter
from allchat.schemas.response_schema import ApiResponse, ErrorResponse, success_response

logger = structlog.get_logger()

APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown events."""
    logger.info(
        "Starting application",
        app_name=settings.app.name,
        environment=settings.app.env,
        default_model=settings.llm.default_model_id,
        server_key=settings.llm.has_server_key,
    )
    if settings.app.is_development or settings.database.is_sqlite:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()
    logger.info("Shutting down application")


app = FastAPI(
    title=settings.app.name,
    description="Multi-model AI chat backend with streamed replies, branching and web search",
    version=APP_VERSION,
    lifespan=lifespan,
    debug=settings.app.debug,
    docs_url="/docs" if settings.app.docs_enabled else None,
    redoc_url="/redoc" if settings.app.docs_enabled else None,
)

app.state.limiter = limiter


async def rate_limit_exceeded_handler(
    request: Request, exc: RateLimitExceeded
) -> JSONResponse:
    """Render slowapi rejections in the common error shape."""
    return JSONResponse(
        status_code=429,
        content=ErrorResponse(
            status=429,
            message="Guest message limit reached. Sign in to continue chatting.",
            code="RATE_LIMIT_EXCEEDED",
        ).model_dump(),
    )


# Exception handlers
app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]

# Middleware (registration order: inner→outer, execution order: outer→inner)
app.add_middleware(AuthMiddleware)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.server.allowed_origins(settings.app.is_development),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", response_model=ApiResponse[dict])
async def health_check() -> dict:
    """Health check endpoint."""
    return success_response({"status": "healthy"})


@app.get("/", response_model=ApiResponse[dict])
async def root() -> dict:
    """Root endpoint."""
    return success_response(
        {
            "app": settings.app.name,
            "version": APP_VERSION,
            "docs": "/docs",
        }
    )


# Register routers
app.include_router(stream_router)
app.include_router(guest_router)
app.include_router(chats_router)
app.include_router(share_router)
app.include_router(key_router)


def run() -> None:
    """Serve the application with uvicorn."""
    import uvicorn

    uvicorn.run(
        "allchat.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.app.is_development,
    )
