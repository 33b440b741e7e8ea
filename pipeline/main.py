import asyncio
import signal
import sys
from typing import Dict, List, Optional

from capture.playwrt import PlaywrightBrowser
from capture.worker import CaptureWorker
from common.config import STAGE_CAPTURE, STAGE_DIFF, STAGE_NOTIFICATION, Settings
from common.contracts import NotificationTransport
from common.logger import get_logger
from datastore.repository import SqlDatastore
from differ.engine import DiffOptions
from differ.worker import DiffWorker
from health.server import HealthServer
from notifier.dispatcher import NotificationDispatcher
from notifier.transports import EmailTransport, SlackTransport, WebhookTransport
from rabbit.broker import (
    RabbitMQClient,
    QUEUE_DIFF_JOBS,
    QUEUE_NOTIFICATION_JOBS,
    QUEUE_SCREENSHOT_JOBS,
)
from rabbit.models import DiffJobData, NotificationJobData, ScreenshotJobData
from rabbit.pool import WorkerPool
from storage.filesystem import FileSystemStorage


class PipelineService:
    """One worker process: the enabled stage pools plus the health endpoint.

    Every collaborator is built here once and handed to the workers.
    """

    def __init__(self, settings: Settings) -> None:
        self._logger = get_logger(__name__)
        self._settings = settings

        self._rabbit: Optional[RabbitMQClient] = None
        self._browser: Optional[PlaywrightBrowser] = None
        self._storage: Optional[FileSystemStorage] = None
        self._datastore: Optional[SqlDatastore] = None
        self._transports: Dict[str, NotificationTransport] = {}
        self._pools: List[WorkerPool] = []
        self._health: Optional[HealthServer] = None

    async def start(self) -> None:
        settings = self._settings

        self._rabbit = await RabbitMQClient.wait_for_broker(settings.rabbitmq_url)
        await self._rabbit.declare_all_queues()
        self._logger.info("Successfully connected to RabbitMQ")

        self._datastore = SqlDatastore.from_url(settings.database_url)
        self._storage = FileSystemStorage(settings.storage_dir, settings.storage_public_url)

        if STAGE_CAPTURE in settings.stages:
            self._browser = PlaywrightBrowser(settings.capture_options)
            await self._browser.start()
            self._add_pool(
                QUEUE_SCREENSHOT_JOBS,
                ScreenshotJobData,
                CaptureWorker(
                    self._browser,
                    self._storage,
                    self._datastore,
                    self._rabbit,
                    max_attempts=settings.capture_max_attempts,
                    base_delay=settings.capture_base_delay,
                ),
                settings.screenshot_concurrency,
            )

        if STAGE_DIFF in settings.stages:
            self._add_pool(
                QUEUE_DIFF_JOBS,
                DiffJobData,
                DiffWorker(
                    self._storage,
                    self._datastore,
                    self._rabbit,
                    options=DiffOptions(
                        threshold=settings.diff_threshold,
                        include_aa=settings.diff_include_aa,
                    ),
                    significance_threshold=settings.diff_significance_threshold,
                ),
                settings.diff_concurrency,
            )

        if STAGE_NOTIFICATION in settings.stages:
            self._transports = {
                t.channel: t
                for t in (EmailTransport(settings.smtp), SlackTransport(), WebhookTransport())
            }
            self._add_pool(
                QUEUE_NOTIFICATION_JOBS,
                NotificationJobData,
                NotificationDispatcher(self._datastore, self._transports, settings.app_url),
                settings.notification_concurrency,
            )

        for pool in self._pools:
            await pool.start()

        self._health = HealthServer(
            self._rabbit, self._datastore, settings.health_host, settings.health_port
        )
        await self._health.start()

        self._logger.info("Pipeline worker started with stages: %s", ", ".join(settings.stages))

    def _add_pool(self, queue_name, model, handler, concurrency: int) -> None:
        self._pools.append(
            WorkerPool(
                self._rabbit,
                queue_name,
                model,
                handler,
                concurrency,
                max_deliveries=self._settings.job_max_deliveries,
                redelivery_delay=self._settings.job_redelivery_delay,
            )
        )

    async def stop(self) -> None:
        timeout = self._settings.shutdown_timeout
        await asyncio.gather(*(pool.stop(timeout) for pool in self._pools))
        self._pools.clear()

        if self._health:
            await self._health.stop()
        if self._browser:
            await self._browser.stop()
        for transport in self._transports.values():
            close = getattr(transport, "close", None)
            if close is not None:
                await close()
        if self._storage:
            await self._storage.close()
        if self._datastore:
            await self._datastore.close()
        if self._rabbit:
            await self._rabbit.disconnect()

        self._logger.info("Pipeline worker stopped")

    async def __aenter__(self) -> "PipelineService":
        await self.start()
        return self

    async def __aexit__(self, *_) -> None:
        await self.stop()


async def entrypoint() -> None:
    service = PipelineService(Settings.from_env())
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal() -> None:
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _on_signal)
    else:
        def handler(signum, frame):
            loop.call_soon_threadsafe(stop_event.set)

        signal.signal(signal.SIGINT, handler)

        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, handler)

    async with service:
        await stop_event.wait()


def run() -> None:
    asyncio.run(entrypoint())


if __name__ == "__main__":
    run()
