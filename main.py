"""
Vinho Label-Resolution Worker API

FastAPI service that resolves queued wine-label scans into catalog
entries and tastings.

Usage:
    uvicorn main:app --reload
"""

# Load environment variables from .env file FIRST
from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vinho_worker.config import Config
from vinho_worker.db import ensure_schema

# Configure logging from environment
logging.basicConfig(
    level=getattr(logging, Config.log_level(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)
logger.info(f"Starting with LOG_LEVEL={Config.log_level()}, DATABASE_PATH={Config.database_path()}")

from vinho_worker.routes import queue_router

# Startup state - set to True once the schema is migrated
_is_ready = False


def is_ready() -> bool:
    """Check if the service is ready to handle requests."""
    return _is_ready


def set_ready(ready: bool = True):
    """Set the service ready state."""
    global _is_ready
    _is_ready = ready


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Migrate the database, then accept traffic."""
    ensure_schema(Config.database_path())
    set_ready(True)
    logger.info("Service ready to handle requests")
    yield
    set_ready(False)


app = FastAPI(
    title="Vinho Label-Resolution Worker",
    description="Resolve scanned wine labels into catalog entries and tastings",
    version="0.1.0",
    lifespan=lifespan,
)

# Internal callers only; responses carry permissive CORS headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


@app.middleware("http")
async def warmup_middleware(request: Request, call_next):
    """Return 503 with retry hint until migrations have run."""
    if request.url.path in ("/health", "/", "/docs", "/openapi.json"):
        return await call_next(request)

    if not is_ready():
        return JSONResponse(
            status_code=503,
            content={
                "error": "Service warming up",
                "message": "The worker is starting up. Please retry in a few seconds.",
                "retry_after": 10,
            },
            headers={"Retry-After": "10"},
        )

    return await call_next(request)


app.include_router(queue_router, tags=["queue"])


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Vinho Label-Resolution Worker",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint for container probes."""
    return {"status": "healthy"}
