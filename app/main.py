"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from app.api import dashboard, integrations, jira, projects, sync, user_mappings, webhooks
from app.api.deps import ApiError
from app.config import settings
from app.models.base import init_db
from app.scheduler import scheduler
from app.security import BasicAuthMiddleware

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting Jira Task Sync Service")
    init_db()
    if settings.scheduler_enabled:
        scheduler.start()
    yield
    # Shutdown
    logger.info("Stopping Jira Task Sync Service")
    scheduler.stop()


app = FastAPI(
    title="Jira Task Sync Service",
    description="Bidirectional synchronization between project tasks and Jira issues",
    version="1.0.0",
    lifespan=lifespan,
)

# Optional built-in auth (recommended if exposed beyond localhost/private networks)
if settings.auth_enabled:
    if not settings.auth_username or not settings.auth_password:
        raise RuntimeError("AUTH_ENABLED=true requires AUTH_USERNAME and AUTH_PASSWORD to be set")
    app.add_middleware(
        BasicAuthMiddleware,
        username=settings.auth_username,
        password=settings.auth_password,
        allow_paths={"/health", "/api/webhooks/jira"},
    )


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include API routers
app.include_router(integrations.router)
app.include_router(projects.router)
app.include_router(user_mappings.router)
app.include_router(jira.router)
app.include_router(webhooks.router)
app.include_router(sync.router)
app.include_router(dashboard.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "Jira Task Sync"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
