"""
Stackyard Backend - Kubernetes stack management API
Manages Kubernetes stacks deployed from uploaded manifests or git repositories
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth.cookie_sessions import cookie_session_manager
from auth.routes import router as auth_router
from auth.shared import ensure_default_admin, get_crypto_service
from auth.user_management_routes import router as user_management_router
from config.paths import ensure_data_dirs
from config.settings import AppConfig, HealthCheckFilter, setup_logging
from deployment.autoupdate import resume_autoupdate_jobs
from deployment.stack_routes import get_stack_services, router as stack_router

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Startup
    # Validate configuration early to fail fast on misconfiguration
    AppConfig.validate()

    logger.info("Starting Stackyard backend...")

    # Reapply health check filter to uvicorn access logger (must be done after uvicorn starts)
    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())

    ensure_data_dirs()
    services = get_stack_services()

    # Run in thread pool to avoid blocking event loop (argon2 hashing)
    await asyncio.to_thread(ensure_default_admin, services.db, get_crypto_service())

    # Job ids from the previous process are gone; register fresh ones
    try:
        await resume_autoupdate_jobs(services)
    except Exception as e:
        logger.error(f"Failed to resume auto-update jobs: {e}", exc_info=True)

    logger.info("Stackyard backend started")

    yield

    # Shutdown
    logger.info("Shutting down Stackyard backend...")

    try:
        await services.scheduler.shutdown()
    except Exception as e:
        logger.error(f"Error stopping job scheduler: {e}")

    try:
        services.kube_factory.close_all()
        logger.info("Kubernetes clients closed")
    except Exception as e:
        logger.error(f"Error closing Kubernetes clients: {e}")

    cookie_session_manager.shutdown()

    # Dispose SQLAlchemy engine (run in thread pool to avoid blocking event loop)
    try:
        await asyncio.to_thread(services.db.engine.dispose)
        logger.info("SQLAlchemy engine disposed")
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}")


app = FastAPI(
    title="Stackyard API",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS - environment-based configuration
cors_config = AppConfig.CORS_ORIGINS
if cors_config:
    origins_list = [origin.strip() for origin in cors_config.split(',')]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    logger.info(f"CORS configured for specific origins: {origins_list}")
else:
    # Allow all origins (auth still required for all endpoints)
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=".*",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )


# Custom exception handler for Pydantic validation errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Malformed request bodies are client errors (400) with field-level details.
    """
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(x) for x in error['loc'])
        errors.append({
            "field": field,
            "message": error['msg'],
            "type": error['type']
        })

    logger.warning(f"Validation failed for {request.url.path}: {errors}")

    return JSONResponse(
        status_code=400,
        content={
            "detail": "Invalid request payload",
            "errors": errors
        }
    )

# ==================== API Routes ====================

app.include_router(auth_router)
app.include_router(user_management_router)
app.include_router(stack_router)


@app.get("/")
async def root():
    """Backend API root - frontend is served separately"""
    return {"message": "Stackyard Backend API", "version": "1.0.0", "docs": "/docs"}


@app.get("/health")
async def health_check():
    """Health check endpoint - no authentication required"""
    return {"status": "healthy", "service": "stackyard-backend"}


if __name__ == "__main__":
    uvicorn.run("main:app", host=AppConfig.HOST, port=AppConfig.PORT, log_level=AppConfig.LOG_LEVEL.lower())
