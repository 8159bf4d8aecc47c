"""
ATA CRM — FastAPI ASGI Entry Point
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crm.api.v1.router import api_router
from crm.config import get_settings
from crm.core.auth_middleware import JWTAuthMiddleware
from crm.core.redis import close_redis
from crm.core.responses import error_response, status_code_for
from crm.lifecycle.errors import ConcurrentModificationError, LifecycleError

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: the shared Redis pool is closed on shutdown."""
    yield
    await close_redis()


app = FastAPI(
    title="ATA CRM",
    description="Order lifecycle and client portal API",
    version="0.1.0",
    docs_url="/api/v1/docs",
    redoc_url="/api/v1/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)
app.add_middleware(JWTAuthMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    if isinstance(exc, ConcurrentModificationError):
        logger.info("Concurrent modification on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status_code_for(exc),
        content=error_response(exc.code, str(exc)),
    )


@app.get("/health")
async def health():
    """Health check for load balancers and Docker."""
    return {"status": "ok", "service": "ata-crm"}
