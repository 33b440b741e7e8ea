import asyncio
from dataclasses import dataclass
from typing import Optional

from common.contracts import BlobStorage, Datastore, JobQueue
from common.errors import describe
from common.logger import get_logger
from differ.engine import DEFAULT_SIGNIFICANCE_THRESHOLD, DiffOptions, DiffResult, compare_images
from rabbit.broker import QUEUE_NOTIFICATION_JOBS
from rabbit.models import DiffJobData, Job, NotificationJobData, NotificationType

DIFF_NAMESPACE = "diffs"


@dataclass(frozen=True)
class DiffOutcome:
    result: DiffResult
    diff_image_url: Optional[str]
    notified: bool


class DiffWorker:
    """Handles jobs from the diff queue.

    Fetch and decode errors are terminal: nothing is retried here, the
    failure is reported as ``screenshot_failed`` and re-raised.
    """

    def __init__(
            self,
            storage: BlobStorage,
            datastore: Datastore,
            queue: JobQueue,
            options: DiffOptions = DiffOptions(),
            significance_threshold: float = DEFAULT_SIGNIFICANCE_THRESHOLD,
    ) -> None:
        self._logger = get_logger(__name__)
        self._storage = storage
        self._datastore = datastore
        self._queue = queue
        self._options = options
        self._significance_threshold = significance_threshold

    async def handle(self, job: Job[DiffJobData]) -> DiffOutcome:
        data = job.data
        self._logger.info("Processing diff job %s for screenshot %s", job.id, data.screenshot_id)

        try:
            return await self._run(data)
        except Exception as exc:
            self._logger.exception("Diff failed for screenshot %s", data.screenshot_id)
            await self._report_failure(data, exc)
            raise

    async def _run(self, data: DiffJobData) -> DiffOutcome:
        current, previous = await asyncio.gather(
            self._storage.fetch(data.current_image_url),
            self._storage.fetch(data.previous_image_url),
        )

        result = await asyncio.to_thread(
            compare_images,
            current,
            previous,
            self._options,
            self._significance_threshold,
        )
        self._logger.info(
            "Diff completed for %s: %.2f%% changed (%d of %d pixels)",
            data.screenshot_id, result.percentage_diff, result.pixel_diff, result.total_pixels,
        )

        if not result.significant:
            return DiffOutcome(result=result, diff_image_url=None, notified=False)

        project_id = await self._project_id(data.screenshot_id)

        diff_image_url = None
        if result.diff_image:
            upload = await self._storage.upload(
                DIFF_NAMESPACE,
                f"{project_id or 'unknown'}/{data.screenshot_id}",
                result.diff_image,
                {
                    "pixelDiff": str(result.pixel_diff),
                    "percentageDiff": str(result.percentage_diff),
                    "totalPixels": str(result.total_pixels),
                    "significant": str(result.significant).lower(),
                },
            )
            diff_image_url = upload.public_url
            self._logger.info("Diff image uploaded to %s", upload.key)

        await self._record_diff(data.screenshot_id, diff_image_url, result.percentage_diff)

        if not project_id:
            self._logger.warning(
                "No project for screenshot %s, diff_detected not sent", data.screenshot_id
            )
            return DiffOutcome(result=result, diff_image_url=diff_image_url, notified=False)

        await self._queue.enqueue(
            QUEUE_NOTIFICATION_JOBS,
            NotificationJobData(
                type=NotificationType.DIFF_DETECTED,
                project_id=project_id,
                screenshot_id=data.screenshot_id,
                message=(
                    f"Visual difference detected: "
                    f"{result.percentage_diff:.2f}% of pixels changed"
                ),
                diff_image_url=diff_image_url,
                diff_data=result.to_diff_data(),
            ),
        )
        self._logger.info(
            "Notification queued for significant difference: %.2f%%", result.percentage_diff
        )

        return DiffOutcome(result=result, diff_image_url=diff_image_url, notified=True)

    async def _project_id(self, screenshot_id: str) -> Optional[str]:
        try:
            record = await self._datastore.get_screenshot(screenshot_id)
        except Exception:
            self._logger.exception("Could not look up screenshot %s", screenshot_id)
            return None
        return record.project_id if record else None

    async def _record_diff(
            self,
            screenshot_id: str,
            diff_image_url: Optional[str],
            percentage: float,
    ) -> None:
        try:
            await self._datastore.update_screenshot(
                screenshot_id,
                {"diff_image_url": diff_image_url, "diff_percentage": percentage},
            )
        except Exception:
            self._logger.exception("Could not store diff result for %s", screenshot_id)

    async def _report_failure(self, data: DiffJobData, exc: Exception) -> None:
        project_id = await self._project_id(data.screenshot_id)
        if not project_id:
            self._logger.warning(
                "No project for screenshot %s, skipping failure notification", data.screenshot_id
            )
            return

        try:
            await self._queue.enqueue(
                QUEUE_NOTIFICATION_JOBS,
                NotificationJobData(
                    type=NotificationType.SCREENSHOT_FAILED,
                    project_id=project_id,
                    screenshot_id=data.screenshot_id,
                    message=f"Failed to process visual diff: {describe(exc)}",
                ),
            )
        except Exception:
            self._logger.exception("Failed to create error notification")
