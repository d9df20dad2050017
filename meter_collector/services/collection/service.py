"""
Collection Service

Responsible for:
- Reloading meter configuration before every cycle
- Scheduling non-overlapping collection cycles
- Manual collection triggers
- Status and health endpoints

HTTP endpoints (localhost):
    GET  /health          liveness and scheduler stats
    GET  /status          live cycle, totals, history, offline meters
    GET  /config/summary  configuration summary and gaps
    POST /collect         manual trigger (409 while a cycle runs)
"""

import asyncio
import signal
import uuid
from datetime import datetime, timezone

from aiohttp import web

from meter_collector.common.config import CollectorConfig, load_config_file
from meter_collector.common.logging_setup import configure_from_env, get_service_logger
from meter_collector.common.models import (
    AgentStatus,
    CollectionError,
    CycleResult,
    ErrorOperation,
    utc_now,
)
from meter_collector.common.scheduler import CycleScheduler, SchedulerState
from meter_collector.services.config.cache import ConfigCache
from meter_collector.services.config.store import ConfigStore, create_config_store
from meter_collector.services.device.bacnet_client import BACnetTransport
from meter_collector.services.device.batch_size import BatchSizeManager
from meter_collector.services.device.protocol_client import DeviceProtocolClient, PropertyTransport
from meter_collector.storage.local_db import LocalDatabase

from .cycle_manager import CollectionCycleManager, new_cycle_result
from .reading_batcher import ReadingBatcher, ReadingStore
from .status import StatusReporter

logger = get_service_logger("collection")

SYSTEM_METER_ID = "system"
BUSY_MESSAGE = "cycle in progress"
STOPPING_MESSAGE = "collector stopping"


class CollectionService:
    """
    Meter collection service.

    Wires the configuration cache, protocol client, cycle manager,
    scheduler and status reporter together and owns their lifecycle.
    """

    def __init__(
        self,
        config: CollectorConfig,
        *,
        database: LocalDatabase | None = None,
        store: ConfigStore | None = None,
        reading_store: ReadingStore | None = None,
        transport: PropertyTransport | None = None,
    ):
        self.config = config
        collection = config.collection

        if database is None and (store is None or reading_store is None):
            database = LocalDatabase(config.store.db_path)
        self.database = database

        self.cache = ConfigCache(
            store or create_config_store(config.store, database),
            default_port=config.bacnet.default_device_port,
        )
        self.transport = transport or BACnetTransport(config.bacnet.interface, config.bacnet.port)
        self.protocol_client = DeviceProtocolClient(
            self.transport, connect_timeout_ms=collection.connect_timeout_ms
        )
        self.batcher = ReadingBatcher(reading_store or database)

        self.batch_size_manager: BatchSizeManager | None = None
        if collection.enable_batching and collection.adaptive_batch_sizing:
            self.batch_size_manager = BatchSizeManager(
                initial_batch_size=config.batch_size.initial_batch_size,
                min_batch_size=config.batch_size.min_batch_size,
                reduction_factor=config.batch_size.reduction_factor,
            )

        self.scheduler = CycleScheduler(collection.interval_seconds, self._run_cycle)
        self.cycle_manager = CollectionCycleManager(
            max_concurrent_devices=collection.max_concurrent_devices,
            batch_size_manager=self.batch_size_manager,
            enable_batching=collection.enable_batching,
            stop_event=self.scheduler.stop_event,
        )
        self.status = StatusReporter(history_size=collection.history_size)

        self._start_time = datetime.now(timezone.utc)
        self._running = False
        self._stopped = False
        self._initial_cycle_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()

        # Health server
        self._health_app: web.Application | None = None
        self._health_runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, serve_http: bool = True) -> None:
        """Load configuration, start the scheduler and the HTTP server"""
        if self._running:
            return
        if self._stopped:
            raise RuntimeError("Collection service has been stopped")

        logger.info("Starting Collection Service")
        self._running = True

        error = await self.cache.reload()
        if error is not None:
            logger.error(f"Initial configuration load failed, cycles will report it: {error}")

        await self.scheduler.start()

        if serve_http:
            await self._start_health_server()

        if self.config.collection.auto_start_cycle:
            self._initial_cycle_task = asyncio.create_task(
                self.scheduler.try_run("scheduled"), name="initial-collection-cycle"
            )

        summary = self.cache.get_configuration_summary()
        logger.info(
            f"Collection Service started ({summary.total} meters, "
            f"interval {self.config.collection.interval_seconds}s)",
            extra={"meter_count": summary.total},
        )

    async def stop(self) -> None:
        """Graceful stop: let the running cycle finish, then release resources"""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping Collection Service")

        # Waits for an in-flight cycle; devices not yet started are skipped
        await self.scheduler.stop()

        if self._initial_cycle_task is not None:
            await self._initial_cycle_task
            self._initial_cycle_task = None

        try:
            await self.protocol_client.close()
        except Exception as e:
            logger.warning(f"Error closing protocol client: {e}")

        try:
            await self.cache.close()
        except Exception as e:
            logger.warning(f"Error closing configuration store: {e}")

        await self._stop_health_server()

        self._running = False
        logger.info("Collection Service stopped")

    async def run(self) -> None:
        """Start, wait for a shutdown signal, stop"""
        try:
            await self.start()
            self._setup_signal_handlers()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal"""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    async def _run_cycle(self, trigger: str) -> CycleResult:
        """Scheduler callback: reload configuration, then poll every meter"""
        result = new_cycle_result(trigger)
        self.status.record_cycle_start(result)

        error = await self.cache.reload()
        if error is not None:
            result.add_error(CollectionError(
                meter_id=SYSTEM_METER_ID,
                operation=ErrorOperation.CONFIG,
                message=f"Configuration reload failed: {error.message}",
            ))
            result.success = False

        devices = self.cache.list_devices()
        if not devices:
            logger.warning("No meters in cache for collection cycle")

        collection = self.config.collection
        try:
            final = await self.cycle_manager.execute_cycle(
                devices,
                self.protocol_client,
                self.batcher,
                collection.batch_read_timeout_ms,
                collection.sequential_read_timeout_ms,
                result=result,
                trigger=trigger,
            )
        except Exception as e:
            logger.error(f"Collection cycle {result.cycle_id} failed: {e}", exc_info=True)
            result.add_error(CollectionError(
                meter_id=SYSTEM_METER_ID,
                operation=ErrorOperation.READ,
                message=f"Cycle aborted: {e}",
            ))
            result.success = False
            final = result.finalize()

        self.status.record_cycle_end(final)
        return final

    async def trigger_collection(self) -> CycleResult:
        """
        Run a manual cycle now.

        Returns the finished CycleResult, or a not-started result when a
        cycle is already running (nothing is queued or recorded then).
        """
        result = await self.scheduler.try_run("manual")
        if result is not None:
            return result

        stopping = self.scheduler.state in (SchedulerState.STOPPING, SchedulerState.STOPPED)
        now = utc_now()
        return CycleResult(
            cycle_id=uuid.uuid4().hex[:12],
            start_time=now,
            end_time=now,
            success=False,
            trigger="manual",
            started=False,
            message=STOPPING_MESSAGE if stopping else BUSY_MESSAGE,
            finalized=True,
        )

    def get_status(self) -> AgentStatus:
        return self.status.get_status(
            is_running=self._running,
            scheduler_state=self.scheduler.state.value,
        )

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_get("/config/summary", self._config_summary_handler)
        app.router.add_post("/collect", self._collect_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        host = self.config.service.health_host
        port = self.config.service.health_port

        self._health_app = self.create_app()
        self._health_runner = web.AppRunner(self._health_app)
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, host, port)
        await site.start()

        logger.info(f"Health server started on {host}:{port}")

    async def _stop_health_server(self) -> None:
        """Stop the health check HTTP server"""
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": "collection",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "config_loaded": self.cache.is_valid(),
            "scheduler": self.scheduler.get_stats(),
        })

    async def _status_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.get_status().to_dict())

    async def _config_summary_handler(self, request: web.Request) -> web.Response:
        report = self.cache.last_load_report
        last_error = self.cache.last_error
        return web.json_response({
            "summary": self.cache.get_configuration_summary().to_dict(),
            "load_report": report.to_dict() if report else None,
            "last_error": last_error.message if last_error else None,
        })

    async def _collect_handler(self, request: web.Request) -> web.Response:
        result = await self.trigger_collection()
        status = 200 if result.started else 409
        return web.json_response(result.to_dict(), status=status)


async def main(config_path: str | None = None) -> None:
    """Main entry point"""
    config = load_config_file(config_path)
    configure_from_env(config.service.log_level)
    service = CollectionService(config)
    await service.run()


if __name__ == "__main__":
    asyncio.run(main())
