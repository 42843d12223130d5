"""
BATCHWORKS FastAPI ASGI entry point.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.router import api_router
from app.config import get_settings
from app.core.auth_middleware import JWTAuthMiddleware
from app.core.logging import configure_logging
from app.core.redis import close_redis
from app.core.responses import register_exception_handlers

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: logging on startup, Redis pool closed on shutdown."""
    configure_logging()
    logger.info("BATCHWORKS API starting (%s)", settings.ENVIRONMENT)
    yield
    await close_redis()


app = FastAPI(
    title="BATCHWORKS",
    description="Production execution: orders, runs, batches, step checklists and material issuance",
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
register_exception_handlers(app)

app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health():
    """Health check for load balancers and Docker."""
    return {"status": "ok", "service": "batchworks"}
