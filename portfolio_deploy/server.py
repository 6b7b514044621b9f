"""Health HTTP API served next to the main app.

Endpoints: /health (full report), /health/live (always 200), /health/ready
(main-app reachability), /metrics (text exposition) and /status (identity).
"""
import argparse
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings
from .health import HealthChecker
from .logger import get_logger, setup_logging
from .metrics import CONTENT_TYPE, render_metrics

logger = get_logger("server")

NO_CACHE = {"Cache-Control": "no-cache, no-store, must-revalidate"}
SERVICE_NAME = "portfolio-health-check"


def _now():
    return datetime.now(timezone.utc).isoformat()


class HealthService:
    """Holds the checker and the last report written by the periodic task"""

    def __init__(self, checker, interval_s):
        self.checker = checker
        self.interval_s = interval_s
        self.last_report = None
        self._task = None

    async def evaluate(self):
        """Fresh report for a request; leaves ``last_report`` alone"""
        return await self.checker.run_checks()

    async def refresh(self):
        report = await self.evaluate()
        self.last_report = report
        return report

    async def _loop(self):
        while True:
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Periodic health check failed: {e}")
            await asyncio.sleep(self.interval_s)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


def _install_error_handlers(app):
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        message = "Not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse({"error": message}, status_code=exc.status_code, headers=NO_CACHE)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error(f"Error handling request {request.url.path}: {exc}")
        return JSONResponse({"error": "Internal server error"}, status_code=500, headers=NO_CACHE)


def _metrics_response(report):
    return PlainTextResponse(render_metrics(report), media_type=CONTENT_TYPE, headers=NO_CACHE)


def create_app(settings, checker=None):
    service = HealthService(checker or HealthChecker(settings), settings.health_interval_s)

    @asynccontextmanager
    async def lifespan(app):
        logger.info(f"Health check server started on port {settings.health_port}")
        service.start()
        yield
        await service.stop()
        logger.info("Health check server closed")

    app = FastAPI(title="Portfolio health", docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)
    app.state.health = service
    _install_error_handlers(app)

    @app.get("/health")
    async def health():
        report = await service.evaluate()
        return JSONResponse(report.to_dict(), status_code=200 if report.healthy else 503, headers=NO_CACHE)

    @app.get("/health/live")
    async def live():
        return JSONResponse({"status": "alive", "timestamp": _now()}, headers=NO_CACHE)

    @app.get("/health/ready")
    async def ready():
        check = await service.checker.check_readiness()
        return JSONResponse(
            {"status": "ready" if check.healthy else "not_ready", "timestamp": _now(), "mainApp": check.to_dict()},
            status_code=200 if check.healthy else 503,
            headers=NO_CACHE,
        )

    @app.get("/metrics")
    async def metrics():
        if not settings.metrics_enabled:
            raise StarletteHTTPException(status_code=404)
        return _metrics_response(await service.evaluate())

    @app.get("/status")
    async def status():
        return JSONResponse(
            {"service": SERVICE_NAME, "status": "running", "timestamp": _now(), "version": settings.app_version},
            headers=NO_CACHE,
        )

    return app


def create_metrics_app(service):
    """Standalone /metrics app for a dedicated scrape port"""
    app = FastAPI(title="Portfolio metrics", docs_url=None, redoc_url=None, openapi_url=None)
    _install_error_handlers(app)

    @app.get("/metrics")
    async def metrics():
        return _metrics_response(await service.evaluate())

    return app


async def serve(settings):
    app = create_app(settings)
    log_level = settings.log_level.lower()
    servers = [uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=settings.health_port, log_level=log_level))]
    if settings.metrics_enabled and settings.metrics_port != settings.health_port:
        metrics_app = create_metrics_app(app.state.health)
        servers.append(uvicorn.Server(uvicorn.Config(
            metrics_app, host="0.0.0.0", port=settings.metrics_port, log_level=log_level, lifespan="off",
        )))
        logger.info(f"Metrics served on port {settings.metrics_port}")
    await asyncio.gather(*(server.serve() for server in servers))


def main():
    parser = argparse.ArgumentParser(description="Portfolio health check service")
    parser.add_argument("--env-file", help="key=value file read before the environment")
    parser.add_argument("--log-level")
    args = parser.parse_args()

    settings = Settings.from_env(env_file=args.env_file)
    setup_logging(args.log_level or settings.log_level)
    logger.info(f"Starting health check service (port={settings.health_port}, main app={settings.main_app_url})")
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down health check server")


if __name__ == "__main__":
    main()
