from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager

from sandbox_preview.core.config import settings
from sandbox_preview.core.exceptions import SandboxPreviewError, SessionNotFoundError, error_response
from sandbox_preview.core.logging_config import logger
from sandbox_preview.core.middleware import RequestLoggingMiddleware, RequestSizeLimitMiddleware
from sandbox_preview.api.v1.router import api_router
from sandbox_preview.services.session_orchestrator import SessionOrchestrator, get_orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    logger.info("=" * 60)
    logger.info(f"Starting {settings.APP_NAME}...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Session lifetime: {settings.SESSION_TTL_SECONDS}s")
    logger.info("=" * 60)

    orchestrator = get_orchestrator()
    await orchestrator.startup()

    yield

    # Shutdown: every live session is stopped before the process exits
    logger.info(f"Shutting down {settings.APP_NAME}...")
    await orchestrator.shutdown()
    logger.info("All sessions released")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Ephemeral sandboxed builds and backend previews",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    redirect_slashes=False,
)

# Add middleware (order matters - last added runs first)
# 1. Request logging (runs first for all requests)
app.add_middleware(RequestLoggingMiddleware)

# 2. Request size limit
app.add_middleware(RequestSizeLimitMiddleware, max_size=settings.MAX_REQUEST_SIZE_MB * 1024 * 1024)

# 3. CORS - Origins from CORS_ORIGINS_STR in .env
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)


# Exception handlers
@app.exception_handler(SandboxPreviewError)
async def sandbox_preview_exception_handler(request: Request, exc: SandboxPreviewError):
    if isinstance(exc, SessionNotFoundError):
        logger.debug(f"{request.method} {request.url.path}: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_response(exc))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid or missing project data",
            "code": "INVALID_INPUT",
            "details": {"errors": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()
            ]},
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": str(exc) if settings.DEBUG else "An error occurred",
            "code": "INTERNAL_ERROR",
        }
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "app_name": settings.APP_NAME,
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "sessions": orchestrator.health(),
    }


# Include API router
app.include_router(api_router)

# Built previews and any other public assets; mounted last so API routes win
app.mount("/", StaticFiles(directory=settings.PUBLIC_DIR, html=True, check_dir=False), name="public")


def main():
    import uvicorn
    uvicorn.run(
        "sandbox_preview.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG,
    )


if __name__ == "__main__":
    main()
