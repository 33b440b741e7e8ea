import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from common.contracts import (
    BlobStorage,
    Datastore,
    HeadlessBrowser,
    ImageSwap,
    JobQueue,
    ScreenshotRecord,
    ScreenshotStatus,
    WaitPolicy,
)
from common.errors import CaptureError, DatastoreError, StaleRecordError, describe
from common.logger import get_logger
from common.retry import retry_with_backoff
from rabbit.broker import QUEUE_DIFF_JOBS, QUEUE_NOTIFICATION_JOBS
from rabbit.models import (
    DiffJobData,
    Job,
    NotificationJobData,
    NotificationType,
    ScreenshotJobData,
    Viewport,
)

SCREENSHOT_NAMESPACE = "screenshots"

# attempts at the version-guarded image swap before giving up
_SWAP_ATTEMPTS = 3


@dataclass(frozen=True)
class CaptureOutcome:
    screenshot_id: str
    image_url: str
    storage_key: str
    attempts: int
    previous_image_url: Optional[str]
    diff_job_id: Optional[str]


class CaptureWorker:
    """Handles jobs from the screenshot queue.

    capture (retried) -> upload -> swap image on the record -> notify and,
    when an older image was displaced, hand the pair over to the diff queue.
    Any terminal error marks the record failed, emits ``screenshot_failed``
    and is re-raised to the pool.
    """

    def __init__(
            self,
            browser: HeadlessBrowser,
            storage: BlobStorage,
            datastore: Datastore,
            queue: JobQueue,
            max_attempts: int = 3,
            base_delay: float = 1.0,
            wait_policy: WaitPolicy = WaitPolicy.NETWORK_IDLE,
            sleep=asyncio.sleep,
    ) -> None:
        self._logger = get_logger(__name__)
        self._browser = browser
        self._storage = storage
        self._datastore = datastore
        self._queue = queue
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._wait_policy = wait_policy
        self._sleep = sleep

    async def handle(self, job: Job[ScreenshotJobData]) -> CaptureOutcome:
        data = job.data
        self._logger.info(
            "Processing screenshot job %s for %s (delivery %d)", job.id, data.url, job.attempt
        )

        try:
            swap, upload_key, attempts = await self._capture_and_store(data)
        except Exception as exc:
            error_msg = describe(exc)
            self._logger.exception("Screenshot failed for %s: %s", data.url, error_msg)
            await self._mark_failed(data.screenshot_id, error_msg)
            await self._notify(
                data,
                NotificationType.SCREENSHOT_FAILED,
                f"Screenshot capture failed for {data.url}: {error_msg}",
            )
            raise

        # the record is completed from here on; a failing diff enqueue fails
        # the job without touching its status
        await self._notify(
            data,
            NotificationType.SCREENSHOT_CAPTURED,
            f"Screenshot captured successfully: {data.url}",
        )

        # a re-capture of the current image displaces nothing
        updated = swap.record
        previous = swap.displaced_image_url
        diff_job_id = None
        if previous:
            diff_job_id = await self._queue.enqueue(
                QUEUE_DIFF_JOBS,
                DiffJobData(
                    screenshot_id=data.screenshot_id,
                    current_image_url=updated.image_url,
                    previous_image_url=previous,
                ),
                job_id=f"diff-{data.screenshot_id}-{updated.version}",
            )
            self._logger.info("Diff job %s queued for %s", diff_job_id, data.screenshot_id)

        return CaptureOutcome(
            screenshot_id=data.screenshot_id,
            image_url=updated.image_url,
            storage_key=upload_key,
            attempts=attempts,
            previous_image_url=previous,
            diff_job_id=diff_job_id,
        )

    async def _capture_and_store(
            self,
            data: ScreenshotJobData,
    ) -> Tuple[ImageSwap, str, int]:
        record = await self._datastore.get_screenshot(data.screenshot_id)
        if record is None:
            raise DatastoreError(f"Screenshot {data.screenshot_id} not found")

        await self._mark_processing(data.screenshot_id)

        viewport = data.viewport or record.viewport or Viewport()

        async def _capture():
            return await self._browser.capture(
                data.url, data.selector, viewport, self._wait_policy
            )

        (image, metadata), attempts = await retry_with_backoff(
            _capture,
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            retry_on=(CaptureError,),
            sleep=self._sleep,
            label=f"Capture of {data.url}",
        )
        self._logger.info(
            "Screenshot captured for %s after %d attempt(s), %d bytes",
            data.url, attempts, len(image),
        )

        upload = await self._storage.upload(
            SCREENSHOT_NAMESPACE,
            f"{data.project_id}/{data.screenshot_id}",
            image,
            {
                "url": data.url,
                "selector": data.selector or "",
                "viewport": f"{viewport.width}x{viewport.height}",
                "timestamp": metadata.timestamp.isoformat(),
            },
        )
        self._logger.info("Screenshot uploaded to %s", upload.key)

        swap = await self._swap_image(record, upload.public_url)
        return swap, upload.key, attempts

    async def _swap_image(self, record: ScreenshotRecord, image_url: str) -> ImageSwap:
        for attempt in range(1, _SWAP_ATTEMPTS + 1):
            try:
                return await self._datastore.swap_image(record.id, image_url, record.version)
            except StaleRecordError:
                if attempt == _SWAP_ATTEMPTS:
                    raise
                self._logger.warning(
                    "Screenshot %s changed concurrently, re-reading (version %d)",
                    record.id, record.version,
                )
                fresh = await self._datastore.get_screenshot(record.id)
                if fresh is None:
                    raise DatastoreError(f"Screenshot {record.id} disappeared")
                record = fresh

        raise AssertionError("unreachable")

    async def _mark_processing(self, screenshot_id: str) -> None:
        try:
            await self._datastore.update_screenshot(
                screenshot_id,
                {"status": ScreenshotStatus.PROCESSING, "error": None},
            )
        except DatastoreError:
            self._logger.exception("Could not mark screenshot %s as processing", screenshot_id)

    async def _mark_failed(self, screenshot_id: str, error_msg: str) -> None:
        try:
            await self._datastore.update_screenshot(
                screenshot_id,
                {
                    "status": ScreenshotStatus.FAILED,
                    "error": error_msg,
                    "updated_at": datetime.now(timezone.utc),
                },
            )
        except Exception:
            self._logger.exception(
                "Failed to update database with error status for %s", screenshot_id
            )

    async def _notify(
            self,
            data: ScreenshotJobData,
            kind: NotificationType,
            message: str,
    ) -> None:
        try:
            await self._queue.enqueue(
                QUEUE_NOTIFICATION_JOBS,
                NotificationJobData(
                    type=kind,
                    project_id=data.project_id,
                    screenshot_id=data.screenshot_id,
                    message=message,
                ),
            )
        except Exception:
            self._logger.exception("Failed to queue %s notification", kind.value)
