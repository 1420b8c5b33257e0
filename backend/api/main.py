"""
Main FastAPI application entry point.

Responsibilities:
- Initialize FastAPI app
- Configure CORS
- Map access-control and lookup errors to HTTP responses
- Include routers
- Setup startup/shutdown events
"""
from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from access_control import Forbidden, Unauthorized
from api.dependencies import get_repository
from api.routes import forecast, hubspot
from config import log_missing_env_vars
from models.database import close_db, init_db
from services.forecast import RegionNotFound
from services.regions import ensure_regions, load_regions

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)

app = FastAPI(title="Sales Pipeline API", version="1.0.0")

cors_origins: list[str] = [
    "http://localhost:3000",
    "http://localhost:5173",
]

frontend_url = os.environ.get("FRONTEND_URL")
if frontend_url:
    cors_origins.append(frontend_url.strip().rstrip("/"))

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Unauthorized)
async def unauthorized_handler(request: Request, exc: Unauthorized) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"detail": str(exc) or "Authentication required"},
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(Forbidden)
async def forbidden_handler(request: Request, exc: Forbidden) -> JSONResponse:
    logging.warning(
        "Access denied",
        extra={"path": request.url.path, "reason": str(exc)},
    )
    return JSONResponse(status_code=403, content={"detail": str(exc) or "Forbidden"})


@app.exception_handler(RegionNotFound)
async def region_not_found_handler(request: Request, exc: RegionNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all uncaught exceptions."""
    logging.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Routes
app.include_router(hubspot.router, prefix="/api/hubspot", tags=["hubspot"])
app.include_router(forecast.router, prefix="/api", tags=["forecast"])


@app.on_event("startup")
async def startup() -> None:
    """Create tables and make sure every configured region has a row."""
    log_missing_env_vars(logging.getLogger("config"))
    await init_db()
    logging.info("Database tables ready")
    try:
        regions = load_regions()
    except FileNotFoundError as e:
        logging.warning(f"Skipping region bootstrap: {e}")
        return
    await ensure_regions(get_repository(), regions)


@app.on_event("shutdown")
async def shutdown() -> None:
    """Clean up database connections on shutdown."""
    logging.info("Shutting down, closing database connections...")
    await close_db()
    logging.info("Database connections closed")


@app.get("/")
async def root_health_check() -> dict[str, str]:
    """Root endpoint exposing the health check payload."""
    logging.info("Root health check requested")
    return await health_check()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    logging.info("Health check requested")
    return {"status": "ok"}
