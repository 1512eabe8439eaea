"""
Vendgros Integration Gateway

FastAPI application entry point: API keys and webhook delivery.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import observability modules
from gateway.config import settings
from gateway.errors import GatewayError
from gateway.logging_config import configure_logging, get_logger
from gateway.sentry_config import configure_sentry
from gateway.middleware.logging import LoggingMiddleware
from gateway.routes.metrics import router as metrics_router

# Import route modules
from gateway.routes.api import router as api_router
from gateway.routes.api_keys import router as api_keys_router
from gateway.routes.webhooks import router as webhooks_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

log = get_logger(component="app")

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="API key issuance and reliable, signed webhook delivery for the Vendgros marketplace",
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    """Translate service errors (validation, ownership, conflicts) to JSON."""
    if exc.status_code >= 500:
        log.error("gateway_error", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include API-key authenticated routes
app.include_router(api_router)

# Include API key management routes
app.include_router(api_keys_router)

# Include webhook routes
app.include_router(webhooks_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "database": "connected"
    }
