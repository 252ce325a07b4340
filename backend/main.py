"""Convocation RFID Tracker - FastAPI Application Entry Point.

Main application setup with all routes, middleware, and lifecycle management.
"""

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import AsyncGenerator

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import get_app_dir, get_config, get_settings, load_config
from errors import DuplicateTagError, TrackerError
from models import HealthResponse, RfidTag
from mqtt_client import get_mqtt_client
from routers import config_router, dashboard, scans, tags
from services.housekeeping import start_housekeeping_service, stop_housekeeping_service
from services.tracker import close_tracker, get_tracker, init_tracker
from services.websocket_manager import get_ws_manager

# Configure logging
settings = get_settings()

# Create logs directory in app directory (writable location)
log_dir = get_app_dir() / "logs"
log_dir.mkdir(exist_ok=True)

# Configure log file path
log_file = log_dir / "tracker.log"

# Setup logging handlers
handlers = [
    logging.StreamHandler(sys.stdout),
    RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,  # Keep 5 backup files
        encoding="utf-8",
    ),
]

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=handlers,
)
logger = logging.getLogger(__name__)
logger.info(f"Logging to file: {log_file}")

# Application start time for uptime calculation
_start_time: float = 0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown of all services.
    """
    global _start_time
    _start_time = time.time()

    logger.info("Starting Convocation RFID Tracker...")

    # Load configuration
    config = load_config()
    logger.info(f"Configuration loaded: storage={config.storage.backend}")

    # Initialize store, cache and engine
    tracker = await init_tracker(config)

    # Connect MQTT client for fixed station readers
    mqtt = get_mqtt_client()
    if config.mqtt.enabled:
        mqtt.connect(asyncio.get_running_loop(), tracker.reader)
    else:
        logger.info("MQTT disabled, fixed station readers will not be ingested")

    # Start housekeeping service
    start_housekeeping_service()

    # Start WebSocket status updates
    ws_manager = get_ws_manager()
    ws_manager.start_status_updates(lambda: mqtt.is_connected, tracker.reconciliation.get_dashboard_stats)

    logger.info("Convocation RFID Tracker started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Convocation RFID Tracker...")

    # Stop services
    await ws_manager.stop_status_updates()
    await stop_housekeeping_service()
    mqtt.disconnect()
    await close_tracker()

    logger.info("Convocation RFID Tracker stopped")


# Create FastAPI application
app = FastAPI(
    title="Convocation RFID Tracker",
    description="RFID tag lifecycle and reconciliation service for convocation fulfilment",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(tags.router)
app.include_router(scans.router)
app.include_router(dashboard.router)
app.include_router(config_router.router)


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    """Render tracker errors in the standard response envelope."""
    content: dict = {"success": False, "error": str(exc)}
    if isinstance(exc, DuplicateTagError) and isinstance(exc.existing, RfidTag):
        content["data"] = exc.existing.model_dump(mode="json", by_alias=True)
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.http_status, content=content)


# Health check endpoint
@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Returns service status including store reachability and MQTT connection.
    """
    config = get_config()
    mqtt = get_mqtt_client()
    tracker = get_tracker()
    uptime = int(time.time() - _start_time) if _start_time > 0 else 0

    store_ok = await tracker.store.ping()
    cache_age = tracker.cache.age_seconds()
    mqtt_ok = mqtt.is_connected or not config.mqtt.enabled

    return HealthResponse(
        ok=store_ok and mqtt_ok,
        store_ok=store_ok,
        mqtt_connected=mqtt.is_connected,
        cache_age_seconds=int(cache_age) if cache_age is not None else None,
        uptime_seconds=uptime,
    )


# Debug endpoint for viewing logs
@app.get("/v1/debug/logs", tags=["debug"])
async def get_logs(lines: int = 100) -> dict:
    """Get recent log entries (debug endpoint).

    Args:
        lines: Number of recent lines to return (default 100, max 500).

    Returns:
        Dict with log file path and recent log lines.
    """
    lines = min(lines, 500)  # Limit to 500 lines max

    log_path = get_app_dir() / "logs" / "tracker.log"

    if not log_path.exists():
        return {"log_path": str(log_path), "exists": False, "lines": []}

    try:
        with open(log_path, "r", encoding="utf-8") as f:
            all_lines = f.readlines()
            recent_lines = all_lines[-lines:] if len(all_lines) > lines else all_lines
            return {
                "log_path": str(log_path),
                "exists": True,
                "total_lines": len(all_lines),
                "lines": [line.rstrip() for line in recent_lines],
            }
    except OSError as e:
        return {"log_path": str(log_path), "exists": True, "error": str(e), "lines": []}


# WebSocket endpoint
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for live station events.

    Clients receive TAG_SCANNED, TAG_VOIDED, UNKNOWN_TAG and STATUS_UPDATE events.
    """
    ws_manager = get_ws_manager()
    await ws_manager.connect(websocket)

    try:
        while True:
            # Keep connection alive, handle any client messages
            data = await websocket.receive_text()
            logger.debug(f"WebSocket received: {data}")
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        app,
        host=config.http.host,
        port=config.http.port,
    )
