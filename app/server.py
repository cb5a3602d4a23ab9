"""FastAPI server setup and routes"""
import asyncio
import os
import time
from typing import Optional
from fastapi import FastAPI, Response, HTTPException
from config import Config
from collectors.process_memory import ProcessMemoryCollector
from exceptions import RenderError
from metrics.exporter import CONTENT_TYPE_LATEST, PrometheusRenderer
from metrics.registry import ProcessRegistry
from logging_config import get_logger, log_error
from .middleware import RequestLoggingMiddleware


logger = get_logger(__name__)


class MetricsServer:
    """FastAPI server exposing per-process memory metrics"""

    def __init__(self, config: Config, collector: Optional[ProcessMemoryCollector] = None):
        self.config = config
        self.app = FastAPI(
            title="Process Memory Exporter",
            version=config.service_version,
            docs_url=None,
            redoc_url=None,
            openapi_url=None
        )
        self.registry = collector.registry if collector else ProcessRegistry(config.grace_cycles)
        self.collector = collector or ProcessMemoryCollector(config, self.registry)
        self.renderer = PrometheusRenderer.from_config(config)

        self.start_time = time.time()
        self.collection_task: Optional[asyncio.Task] = None

        self._setup_middleware()
        self._setup_routes()
        self._setup_events()

    def _setup_middleware(self):
        """Setup HTTP middleware"""
        if self.config.enable_request_logging:
            self.app.add_middleware(RequestLoggingMiddleware)

    def _setup_routes(self):
        """Setup FastAPI routes"""

        @self.app.get(self.config.metrics_path, response_class=Response)
        async def get_metrics():
            """Serve metrics in Prometheus format"""
            try:
                await self.collector.ensure_fresh()
            except Exception as e:
                # serve whatever the registry holds
                log_error(logger, e, "scrape_collection", path=self.config.metrics_path)
            entries = self.registry.snapshot()
            status = self.collector.status()
            try:
                content = self.renderer.render(entries, status)
            except RenderError as e:
                log_error(logger, e, "render", entries=len(entries))
                raise HTTPException(status_code=500, detail={"error": str(e)})
            return Response(content, media_type=CONTENT_TYPE_LATEST)

        @self.app.get('/health')
        def health_check():
            """Health check endpoint"""
            status = self.collector.status()
            health_data = {
                "status": "healthy" if status.healthy else "unhealthy",
                "stale": status.stale,
                "last_success_seconds_ago": self._age(status.last_success_at),
                "consecutive_failures": status.consecutive_failures,
                "tracked_processes": status.tracked_processes,
            }

            if not status.healthy:
                raise HTTPException(status_code=503, detail=health_data)

            return health_data

        @self.app.get('/status')
        def get_status():
            """Detailed status information"""
            status = self.collector.status()
            return {
                "service": {
                    "name": self.config.service_name,
                    "version": self.config.service_version,
                    "uptime_seconds": round(time.time() - self.start_time, 1),
                    "hostname": os.uname().nodename
                },
                "collection": {
                    "state": status.state.value,
                    "interval_seconds": self.config.collection_interval,
                    "grace_cycles": self.config.grace_cycles,
                    "last_success_seconds_ago": self._age(status.last_success_at),
                    "total_collections": status.cycles_total,
                    "collection_failures": status.failures_total,
                    "consecutive_failures": status.consecutive_failures,
                    "last_error": status.last_error,
                    "stale": status.stale,
                },
                "registry": {
                    "tracked_processes": status.tracked_processes
                }
            }

        @self.app.post('/collect')
        async def manual_collect():
            """Manually trigger metrics collection"""
            result = await self.collector.refresh_async()
            if result is None:
                return {"success": False, "message": "Collection already in progress"}
            if not result.success:
                raise HTTPException(status_code=503, detail={"error": result.error})
            return {
                "success": True,
                "message": "Metrics collection completed",
                "sampled": result.sampled,
                "skipped": result.skipped,
                "removed": list(result.removed)
            }

    def _setup_events(self):
        """Setup FastAPI startup/shutdown events"""

        @self.app.on_event("startup")
        async def startup_event():
            """Start the background collection loop"""
            logger.info(
                "Application startup initiated",
                collection_interval=self.config.collection_interval,
                metrics_path=self.config.metrics_path,
                event_type="server_startup"
            )
            self.collection_task = asyncio.create_task(self._collection_loop())

        @self.app.on_event("shutdown")
        async def shutdown_event():
            """Cleanup on shutdown"""
            logger.info("Shutting down process memory exporter", event_type="server_shutdown")

            if self.collection_task:
                self.collection_task.cancel()
                try:
                    await self.collection_task
                except asyncio.CancelledError:
                    pass

            self.collector.close()

    async def _collection_loop(self):
        """Background metrics collection loop"""
        while True:
            start_time = time.monotonic()
            try:
                await self.collector.refresh_async()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log_error(logger, e, "collection_loop")
            elapsed = time.monotonic() - start_time
            try:
                await asyncio.sleep(max(self.config.collection_interval - elapsed, 0))
            except asyncio.CancelledError:
                break

    @staticmethod
    def _age(timestamp: Optional[float]) -> Optional[float]:
        if timestamp is None:
            return None
        return round(time.time() - timestamp, 1)

    def get_app(self) -> FastAPI:
        """Get the FastAPI application"""
        return self.app
