#!/usr/bin/env python3
"""Startup script for the Homezy API."""
import uvicorn

from app.config import settings

if __name__ == "__main__":
    print(f"Starting Homezy API on port {settings.port}")
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
    )
