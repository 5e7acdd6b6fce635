"""
Reimagine Photos Backend API
Credit-gated AI photo editing
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from loguru import logger
import sys

from .config import get_settings
from .deps import get_image_provider
from .routes import credit_routes, edit_routes


settings = get_settings()

# Configure logging
logger.remove()
logger.add(
    sys.stdout,
    colorize=True,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.LOG_LEVEL,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Debug mode: {settings.DEBUG}")
    logger.info(f"Ledger backend: {settings.LEDGER_BACKEND}, image provider: {settings.IMAGE_PROVIDER}")

    if not get_image_provider().configured:
        logger.warning(f"{settings.IMAGE_PROVIDER} API key not set - image edits will fail and be refunded!")

    app.state.inflight_edits = set()

    yield

    # Shutdown: let running edits finish their refund path
    await edit_routes.drain_inflight(
        edit_routes.inflight_edits(app),
        timeout=settings.PROVIDER_TIMEOUT_SECONDS + 15,
    )
    logger.info(f"Shutting down {settings.APP_NAME}")


app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Reimagine Photos API - AI photo editing paid with credits

    ## Authentication
    Send a Firebase ID token as `Authorization: Bearer <token>`.

    ## Credits
    Each edit costs one credit. The credit is reserved before the AI model runs
    and refunded automatically if the edit fails.
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
    max_age=3600,
)


# Global exception handler - never expose details to the client
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.opt(exception=exc).error(f"Unhandled exception on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "error_code": "INTERNAL_ERROR",
        }
    )


# Include routers
app.include_router(edit_routes.router)
app.include_router(credit_routes.router)


# Health check endpoint
@app.get("/", tags=["Health"])
async def root():
    """Root endpoint - health check."""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "ledger_backend": settings.LEDGER_BACKEND,
        "image_provider": settings.IMAGE_PROVIDER,
        "provider_configured": get_image_provider().configured,
        "payments_configured": bool(settings.STRIPE_SECRET_KEY),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "reimagine.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
