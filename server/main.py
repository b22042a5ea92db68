"""DevicePair Server - FastAPI Application Entry Point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from server.config import settings
from server.database import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and expiry sweeper on startup."""
    init_db()

    from server.services.cleanup import sweeper
    sweeper.start()

    yield

    sweeper.stop()


app = FastAPI(
    title="DevicePair",
    description="Device pairing and bearer token lifecycle for headless clients",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - browser extensions call in from their own origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.__class__.__name__)
    return JSONResponse(
        status_code=500,
        content={"detail": {"error": "storage_unavailable", "message": "Please try again later"}},
    )


# --- Register API routers ---
from server.api.pairing import router as pairing_router  # noqa: E402
from server.api.devices import router as devices_router  # noqa: E402

API_PREFIX = "/api/v1"

app.include_router(pairing_router, prefix=API_PREFIX)
app.include_router(devices_router, prefix=API_PREFIX)


@app.get("/")
def root():
    """Health check / server info."""
    return {
        "name": settings.server_name,
        "version": "0.1.0",
        "status": "running",
    }


@app.get("/api/v1/health")
def health():
    return {"status": "ok"}
