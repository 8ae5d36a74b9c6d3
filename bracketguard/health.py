"""
Health endpoints served next to the running service.

- /health: liveness plus whether the last reconciliation pass completed
- /status: reconciler counters, last pass summary, tracked brackets
"""
import threading
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from bracketguard import __version__
from bracketguard.monitoring.logger import get_logger

logger = get_logger(__name__)


def get_health_app(service: Any) -> FastAPI:
    """Health app bound to one BracketGuardService."""
    app = FastAPI(title="bracketguard health", version=__version__)

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "bracketguard"}

    @app.get("/health")
    async def health():
        status = service.status()
        last = status["reconciler"]["last_summary"]
        degraded = bool(last and last["aborted"])
        return JSONResponse(
            content={
                "status": "degraded" if degraded else "healthy",
                "uptime_seconds": status["uptime_seconds"],
                "environment": status["environment"],
                "last_reconcile_error": last["error"] if last else None,
            },
            status_code=200,
        )

    @app.get("/status")
    async def status():
        return service.status()

    return app


def start_health_server(service: Any, host: str, port: int) -> threading.Thread:
    """Run the health app with uvicorn on a daemon thread."""
    import uvicorn

    app = get_health_app(service)

    def _run_health() -> None:
        uvicorn.run(app, host=host, port=port, log_level="warning")

    t = threading.Thread(target=_run_health, name="bracketguard-health", daemon=True)
    t.start()
    logger.info("Health server started", host=host, port=port)
    return t
