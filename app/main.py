"""
FastAPI application entry point.
Configures routes, middleware, and lifecycle events.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import init_db, close_db
from app.exceptions import DomainError
from app.logging_config import configure_logging
from app.redis import RedisClient
import logging

# Import routers - MUST BE AT TOP LEVEL
from app.api.bookings import router as bookings_router
from app.api.payments import router as payments_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifecycle manager."""
    # Startup
    configure_logging()
    logging.info("Starting up Homezy...")

    if settings.is_development:
        await init_db()

    # Initialize Redis
    try:
        RedisClient.get_client()
    except Exception as e:
        logging.warning(f"Failed to initialize Redis: {e}")

    yield

    # Shutdown
    await RedisClient.close()
    await close_db()
    logging.info("Shutting down...")


app = FastAPI(
    title="Homezy",
    description="Home services booking and payments",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError):
    logging.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", **exc.to_dict()},
    )


# Global Exception Handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logging.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal Server Error"},
    )

# CORS middleware
origins = []
if settings.is_development:
    origins.append("*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint. Redis being down only disables booking locks."""
    redis_ok = await RedisClient.is_available()
    return {
        "status": "healthy",
        "app": settings.app_name,
        "env": settings.app_env,
        "booking_locks": "available" if redis_ok else "unavailable",
    }


app.include_router(
    bookings_router,
    prefix="/bookings",
    tags=["bookings"],
)
app.include_router(
    payments_router,
    prefix="/payments",
    tags=["payments"],
)
