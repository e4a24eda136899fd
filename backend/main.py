"""
FastAPI application entry point for Ascent access control.

Identity reaches the access routes through request.state.clerk_claims,
set by the upstream Clerk verifier. No tokens are issued or verified here.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from ascent_access import __version__
from ascent_access.api.routes import access, webhooks_clerk
from ascent_access.config.access_policy import get_access_policy_loader
from ascent_access.platform.errors import register_error_handlers
from ascent_access.platform.guard import AccessEngine

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Ascent access API")

    loader = get_access_policy_loader()
    engine = AccessEngine.from_config(loader)
    app.state.access_engine = engine
    app.state.pending_retry_after_seconds = loader.get_pending_retry_after()

    logger.info(
        "Access engine ready",
        extra={
            "guards": sorted(loader.get_guards()),
            "flag_source": type(engine.flags.source).__name__,
            "plan_source": type(engine.plans).__name__,
        },
    )

    yield

    # Shutdown
    logger.info("Shutting down Ascent access API")
    engine.flags.source.close()
    await engine.plans.close()


# Create FastAPI app
app = FastAPI(
    title="Ascent Access API",
    description="Authorization and impersonation resolution for protected views",
    version=__version__,
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(access.router)
app.include_router(webhooks_clerk.router)


@app.get("/health", include_in_schema=False)
async def health():
    """Liveness check (bypasses authentication)."""
    return {"status": "ok", "version": __version__}


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
