"""
Liveness and readiness endpoints for the controller pod.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from . import __version__

logger = logging.getLogger(__name__)


def create_app(controller) -> FastAPI:
    """
    Create the health FastAPI application.

    Args:
        controller: Controller exposing has_synced(), last_sync_resource_version()
            and queue

    Returns:
        FastAPI application instance
    """
    app = FastAPI(title="k3sfn controller", version=__version__)

    @app.get("/live")
    async def live():
        return {"alive": True}

    @app.get("/ready")
    async def ready():
        if not controller.has_synced():
            return JSONResponse(content={"ready": False}, status_code=503)
        return {"ready": True}

    @app.get("/health")
    async def health():
        return {
            "status": "healthy" if controller.has_synced() else "syncing",
            "synced": controller.has_synced(),
            "resourceVersion": controller.last_sync_resource_version(),
            "queueDepth": len(controller.queue),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def start_health_server(controller, port: int, host: str = "0.0.0.0") -> Optional[threading.Thread]:
    """Serve the health app from a daemon thread; returns None when disabled."""
    if not port:
        return None

    config = uvicorn.Config(create_app(controller), host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name="k3sfnctl-health", daemon=True)
    thread.start()
    logger.info(f"Health server listening on {host}:{port}")
    return thread
