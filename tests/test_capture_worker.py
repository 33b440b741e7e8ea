"""Tests for the screenshot capture stage."""

import asyncio

import pytest

from capture.worker import CaptureWorker
from common.contracts import ScreenshotRecord, ScreenshotStatus, TERMINAL_STATUSES
from common.errors import CaptureError, DatastoreError, EnqueueError
from fakes import FakeBrowser, FakeDatastore, FakeQueue, FakeStorage, make_png
from rabbit.broker import QUEUE_DIFF_JOBS, QUEUE_NOTIFICATION_JOBS
from rabbit.models import Job, NotificationType, ScreenshotJobData, Viewport


async def _no_sleep(_delay):
    return None


def _job(**overrides):
    data = {
        "project_id": "p1",
        "screenshot_id": "s1",
        "url": "https://example.com",
        "viewport": Viewport(width=1280, height=720),
    }
    data.update(overrides)
    return Job(id="job-1", queue="screenshot", data=ScreenshotJobData(**data))


def _worker(browser, storage=None, datastore=None, queue=None, max_attempts=3):
    return CaptureWorker(
        browser,
        storage or FakeStorage(),
        datastore or FakeDatastore(),
        queue or FakeQueue(),
        max_attempts=max_attempts,
        base_delay=0.01,
        sleep=_no_sleep,
    )


@pytest.fixture
def datastore():
    store = FakeDatastore()
    store.add_screenshot(ScreenshotRecord(id="s1", project_id="p1", url="https://example.com"))
    return store


class TestCaptureSuccess:
    """First capture of a page and captures that displace an older image."""

    def test_first_capture_completes_without_diff(self, datastore):
        browser = FakeBrowser([make_png(1280, 720)])
        storage = FakeStorage()
        queue = FakeQueue()
        worker = _worker(browser, storage, datastore, queue)

        outcome = asyncio.run(worker.handle(_job()))

        record = datastore.screenshots["s1"]
        assert record.status == ScreenshotStatus.COMPLETED
        assert record.image_url == outcome.image_url
        assert record.last_image_url is None
        assert outcome.attempts == 1
        assert outcome.diff_job_id is None

        notifications = queue.on(QUEUE_NOTIFICATION_JOBS)
        assert [n.type for n in notifications] == [NotificationType.SCREENSHOT_CAPTURED]
        assert notifications[0].message == "Screenshot captured successfully: https://example.com"
        assert queue.on(QUEUE_DIFF_JOBS) == []

        assert browser.calls[0]["viewport"] == Viewport(width=1280, height=720)
        assert outcome.storage_key.startswith("screenshots/p1/s1/")
        assert storage.metadata[outcome.storage_key]["viewport"] == "1280x720"

    def test_status_moves_through_processing_to_completed(self, datastore):
        worker = _worker(FakeBrowser([make_png(10, 10)]), datastore=datastore)

        asyncio.run(worker.handle(_job()))

        assert datastore.statuses("s1") == [ScreenshotStatus.PROCESSING, ScreenshotStatus.COMPLETED]

    def test_displaced_image_queues_a_diff(self, datastore):
        storage = FakeStorage()
        old_url = storage.put("screenshots/p1/s1/old.png", make_png(1280, 720))
        datastore.screenshots["s1"].image_url = old_url
        queue = FakeQueue()
        worker = _worker(
            FakeBrowser([make_png(1280, 720, block=(0, 0, 50, 50))]), storage, datastore, queue
        )

        outcome = asyncio.run(worker.handle(_job()))

        diffs = queue.on(QUEUE_DIFF_JOBS)
        assert len(diffs) == 1
        assert diffs[0].previous_image_url == old_url
        assert diffs[0].current_image_url == outcome.image_url
        assert outcome.previous_image_url == old_url
        assert outcome.diff_job_id == "diff-s1-1"
        assert datastore.screenshots["s1"].last_image_url == old_url

    def test_identical_recapture_does_not_queue_a_diff(self, datastore):
        png = make_png(32, 32)
        queue = FakeQueue()
        worker = _worker(FakeBrowser([png, png]), datastore=datastore, queue=queue)

        asyncio.run(worker.handle(_job()))
        asyncio.run(worker.handle(_job()))

        assert queue.on(QUEUE_DIFF_JOBS) == []
        assert datastore.screenshots["s1"].version == 2

    def test_unchanged_page_after_a_change_queues_one_diff(self, datastore):
        first = make_png(64, 64)
        second = make_png(64, 64, block=(0, 0, 32, 32))
        queue = FakeQueue()
        worker = _worker(
            FakeBrowser([first, second, second, second]), datastore=datastore, queue=queue
        )

        outcomes = [asyncio.run(worker.handle(_job())) for _ in range(4)]

        diffs = queue.on(QUEUE_DIFF_JOBS)
        assert len(diffs) == 1
        assert diffs[0].previous_image_url == outcomes[0].image_url
        assert diffs[0].current_image_url == outcomes[1].image_url
        assert [o.diff_job_id for o in outcomes] == [None, "diff-s1-2", None, None]
        assert datastore.screenshots["s1"].last_image_url == outcomes[0].image_url

    def test_transient_capture_errors_are_retried(self, datastore):
        browser = FakeBrowser([CaptureError("timeout"), CaptureError("timeout"), make_png(8, 8)])
        worker = _worker(browser, datastore=datastore)

        outcome = asyncio.run(worker.handle(_job()))

        assert outcome.attempts == 3
        assert len(browser.calls) == 3
        assert datastore.screenshots["s1"].status == ScreenshotStatus.COMPLETED

    def test_record_viewport_used_when_job_has_none(self, datastore):
        datastore.screenshots["s1"].viewport = Viewport(width=800, height=600)
        browser = FakeBrowser([make_png(8, 8)])

        asyncio.run(_worker(browser, datastore=datastore).handle(_job(viewport=None)))

        assert browser.calls[0]["viewport"] == Viewport(width=800, height=600)

    def test_concurrent_version_change_is_retried(self, datastore):
        store = datastore
        original_swap = store.swap_image
        bumped = {"done": False}

        async def racing_swap(id, image_url, expected_version):
            if not bumped["done"]:
                bumped["done"] = True
                await original_swap(id, "https://other.test/img.png", expected_version)
            return await original_swap(id, image_url, expected_version)

        store.swap_image = racing_swap
        queue = FakeQueue()
        worker = _worker(FakeBrowser([make_png(8, 8)]), datastore=store, queue=queue)

        outcome = asyncio.run(worker.handle(_job()))

        record = store.screenshots["s1"]
        assert record.version == 2
        assert record.last_image_url == "https://other.test/img.png"
        assert outcome.diff_job_id == "diff-s1-2"


class TestCaptureFailure:
    def test_exhausted_retries_mark_failed_and_notify(self, datastore):
        error = CaptureError("Navigation timeout of 30000 ms exceeded")
        browser = FakeBrowser([error])
        queue = FakeQueue()
        worker = _worker(browser, datastore=datastore, queue=queue, max_attempts=3)

        with pytest.raises(CaptureError) as exc_info:
            asyncio.run(worker.handle(_job()))

        assert exc_info.value is error
        assert len(browser.calls) == 3

        record = datastore.screenshots["s1"]
        assert record.status == ScreenshotStatus.FAILED
        assert record.error == "CaptureError: Navigation timeout of 30000 ms exceeded"

        notifications = queue.on(QUEUE_NOTIFICATION_JOBS)
        assert [n.type for n in notifications] == [NotificationType.SCREENSHOT_FAILED]
        assert "CaptureError" in notifications[0].message
        assert queue.on(QUEUE_DIFF_JOBS) == []

    def test_exactly_one_terminal_transition(self, datastore):
        worker = _worker(FakeBrowser([CaptureError("x")]), datastore=datastore)

        with pytest.raises(CaptureError):
            asyncio.run(worker.handle(_job()))

        terminal = [s for s in datastore.statuses("s1") if s in TERMINAL_STATUSES]
        assert terminal == [ScreenshotStatus.FAILED]

    def test_missing_record_fails_fast(self):
        browser = FakeBrowser([make_png(8, 8)])
        queue = FakeQueue()
        worker = _worker(browser, datastore=FakeDatastore(), queue=queue)

        with pytest.raises(DatastoreError):
            asyncio.run(worker.handle(_job()))

        assert browser.calls == []
        assert [n.type for n in queue.on(QUEUE_NOTIFICATION_JOBS)] == [
            NotificationType.SCREENSHOT_FAILED
        ]

    def test_notification_outage_does_not_mask_capture_error(self, datastore):
        queue = FakeQueue(failing_queues=[QUEUE_NOTIFICATION_JOBS])
        worker = _worker(FakeBrowser([CaptureError("boom")]), datastore=datastore, queue=queue)

        with pytest.raises(CaptureError):
            asyncio.run(worker.handle(_job()))

        assert datastore.screenshots["s1"].status == ScreenshotStatus.FAILED

    def test_failed_diff_enqueue_keeps_record_completed(self, datastore):
        storage = FakeStorage()
        datastore.screenshots["s1"].image_url = storage.put("screenshots/p1/s1/a.png", b"a")
        queue = FakeQueue(failing_queues=[QUEUE_DIFF_JOBS])
        worker = _worker(FakeBrowser([make_png(8, 8)]), storage, datastore, queue)

        with pytest.raises(EnqueueError):
            asyncio.run(worker.handle(_job()))

        assert datastore.screenshots["s1"].status == ScreenshotStatus.COMPLETED
        assert ScreenshotStatus.FAILED not in datastore.statuses("s1")
