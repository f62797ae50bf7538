"""adsignal FastAPI application entry point.

Run with: uvicorn adsignal_core.main:app
"""
import logging
import os
import sqlite3

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .api.routes import router as api_router
from .events.schema import SCHEMA_VERSION, open_database


logging.basicConfig(
    level=os.getenv("ADSIGNAL_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


def health() -> JSONResponse:
    """Liveness plus a round trip to the event database (no API key needed)."""
    try:
        with open_database() as conn:
            conn.execute("SELECT 1 FROM tracking_events LIMIT 1").fetchall()
    except sqlite3.Error as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "schema_version": SCHEMA_VERSION},
        )
    return JSONResponse(content={"status": "ok", "schema_version": SCHEMA_VERSION})


def create_app() -> FastAPI:
    """Build the API: tracking routes under /api/v1 and an open /health check."""
    app = FastAPI(
        title="adsignal API",
        version="0.1.0",
        description="Ad-click attribution for storefront purchases",
    )

    app.include_router(api_router)
    app.add_api_route("/health", health, methods=["GET"], include_in_schema=False)

    return app


app = create_app()
