"""Tests for notification rendering, recipients and delivery."""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from common.config import SmtpSettings
from common.contracts import Project, ScreenshotRecord
from common.errors import DatastoreError, PartialDeliveryError, TransportError
from fakes import FakeDatastore
from notifier.dispatcher import NotificationDispatcher, recipients_for
from notifier.templates import TemplateContext, render
from notifier.transports import EmailTransport, SlackTransport, WebhookTransport
from rabbit.models import (
    ChangeItem,
    DiffData,
    Job,
    NotificationJobData,
    NotificationType,
    ProjectSummary,
)

APP_URL = "https://app.test"


def _project(integrations=None):
    return Project(id="p1", name="Docs", config={"integrations": integrations or {}})


def _event(type=NotificationType.SCREENSHOT_CAPTURED, **kwargs):
    return NotificationJobData(type=type, project_id="p1", screenshot_id="s1", **kwargs)


def _transport(channel, result=True):
    transport = AsyncMock()
    transport.channel = channel
    transport.send = AsyncMock(return_value=result)
    return transport


def _datastore(project):
    store = FakeDatastore()
    store.add_project(project)
    store.add_screenshot(ScreenshotRecord(
        id="s1", project_id="p1", url="https://example.com/pricing", name="Pricing",
        image_url="https://cdn.test/s1.png",
    ))
    return store


class TestRecipients:
    def test_collects_every_channel(self):
        project = _project({
            "email": {"recipients": ["a@x.test", "b@x.test"]},
            "slack": {"webhook": "https://hooks.slack.test/1"},
            "webhook": {"urls": ["https://hook.test/a"]},
        })
        assert recipients_for(project) == {
            "email": ["a@x.test", "b@x.test"],
            "slack": ["https://hooks.slack.test/1"],
            "webhook": ["https://hook.test/a"],
        }

    def test_single_webhook_url(self):
        assert recipients_for(_project({"webhook": {"url": "https://hook.test"}})) == {
            "webhook": ["https://hook.test"]
        }

    def test_missing_config_has_no_recipients(self):
        assert recipients_for(Project(id="p1", name="Docs")) == {}
        assert recipients_for(_project({"email": {"recipients": []}})) == {}


class TestTemplates:
    def _ctx(self, event, screenshot=None):
        return TemplateContext(event, _project(), screenshot, APP_URL)

    def test_diff_detected_includes_counts_and_links(self):
        event = _event(
            NotificationType.DIFF_DETECTED,
            diff_image_url="https://cdn.test/diff.png",
            diff_data=DiffData(pixel_diff=1234, percentage_diff=2.5, total_pixels=49360),
        )
        screenshot = ScreenshotRecord(id="s1", project_id="p1", url="https://e.test", name="Home")

        message = render(self._ctx(event, screenshot))

        assert message.subject.endswith("Changes detected: Home")
        assert "2.50%" in message.html
        assert "1,234 of 49,360" in message.html
        assert "https://cdn.test/diff.png" in message.html
        assert f"{APP_URL}/projects/p1" in message.text

    def test_failed_uses_event_message_and_escapes_html(self):
        event = _event(NotificationType.SCREENSHOT_FAILED, message="CaptureError: <timeout>")

        message = render(self._ctx(event))

        assert "CaptureError: &lt;timeout&gt;" in message.html
        assert "CaptureError: <timeout>" in message.text
        assert "s1" in message.subject

    def test_summary_and_bulk_changes(self):
        summary = render(self._ctx(_event(
            NotificationType.PROJECT_SUMMARY,
            summary=ProjectSummary(
                total_screenshots=10, changes_detected=3, pending_approval=2, failed=1
            ),
            period="Weekly",
        )))
        assert summary.subject.endswith("Weekly summary: Docs")
        assert "Pending approval: 2" in summary.text

        bulk = render(self._ctx(_event(
            NotificationType.BULK_CHANGES,
            changes=[ChangeItem(screenshot_name="Home", percentage_diff=4.2)],
        )))
        assert "1 screenshots changed" in bulk.subject
        assert "Home: 4.20%" in bulk.text

    def test_summary_without_data_renders_nothing(self):
        assert render(self._ctx(_event(NotificationType.PROJECT_SUMMARY))) is None
        assert render(self._ctx(_event(NotificationType.BULK_CHANGES))) is None


class TestDispatcher:
    """NotificationDispatcher delivery semantics."""

    def _job(self, event):
        return Job(id="n1", queue="notification", data=event)

    def test_zero_recipients_touch_no_transport(self):
        email = _transport("email")
        dispatcher = NotificationDispatcher(_datastore(_project()), {"email": email}, APP_URL)

        outcome = asyncio.run(dispatcher.handle(self._job(_event())))

        assert outcome.skipped
        email.send.assert_not_called()

    def test_sends_per_channel(self):
        project = _project({
            "email": {"recipients": ["a@x.test"]},
            "slack": {"webhook": "https://hooks.slack.test/1"},
        })
        email = _transport("email")
        slack = _transport("slack")
        dispatcher = NotificationDispatcher(
            _datastore(project), {"email": email, "slack": slack}, APP_URL
        )

        outcome = asyncio.run(dispatcher.handle(self._job(_event())))

        assert outcome.sent == {"email": 1, "slack": 1}
        recipients, subject, body = email.send.call_args.args
        assert recipients == ["a@x.test"]
        assert "Pricing" in subject
        assert body.startswith("<!DOCTYPE html>")
        assert not slack.send.call_args.args[2].startswith("<")

    def test_false_send_is_a_transport_error(self):
        project = _project({"email": {"recipients": ["a@x.test"]}})
        dispatcher = NotificationDispatcher(
            _datastore(project), {"email": _transport("email", result=False)}, APP_URL
        )

        with pytest.raises(TransportError):
            asyncio.run(dispatcher.handle(self._job(_event())))

    def test_raising_transport_is_wrapped(self):
        project = _project({"email": {"recipients": ["a@x.test"]}})
        email = _transport("email")
        email.send.side_effect = ConnectionResetError("reset by peer")
        dispatcher = NotificationDispatcher(_datastore(project), {"email": email}, APP_URL)

        with pytest.raises(TransportError) as exc_info:
            asyncio.run(dispatcher.handle(self._job(_event())))

        assert "ConnectionResetError" in str(exc_info.value)

    def test_failed_channel_does_not_stop_the_others(self):
        project = _project({
            "email": {"recipients": ["a@x.test"]},
            "slack": {"webhook": "https://hooks.slack.test/1"},
            "webhook": {"url": "https://hook.test/a"},
        })
        email = _transport("email")
        slack = _transport("slack", result=False)
        webhook = _transport("webhook")
        dispatcher = NotificationDispatcher(
            _datastore(project), {"email": email, "slack": slack, "webhook": webhook}, APP_URL
        )

        with pytest.raises(PartialDeliveryError) as exc_info:
            asyncio.run(dispatcher.handle(self._job(_event())))

        email.send.assert_awaited_once()
        slack.send.assert_awaited_once()
        webhook.send.assert_awaited_once()
        assert "slack" in str(exc_info.value)
        assert exc_info.value.remaining.channels == ["slack"]

        slack.send.return_value = True
        retry = self._job(exc_info.value.remaining)
        outcome = asyncio.run(dispatcher.handle(retry))

        assert outcome.sent == {"slack": 1}
        assert email.send.await_count == 1
        assert webhook.send.await_count == 1
        assert slack.send.await_count == 2

    def test_every_channel_failing_is_a_plain_transport_error(self):
        project = _project({
            "email": {"recipients": ["a@x.test"]},
            "slack": {"webhook": "https://hooks.slack.test/1"},
        })
        email = _transport("email", result=False)
        slack = _transport("slack")
        slack.send.side_effect = ConnectionResetError("reset by peer")
        dispatcher = NotificationDispatcher(
            _datastore(project), {"email": email, "slack": slack}, APP_URL
        )

        with pytest.raises(TransportError) as exc_info:
            asyncio.run(dispatcher.handle(self._job(_event())))

        assert not isinstance(exc_info.value, PartialDeliveryError)
        assert str(exc_info.value).startswith("Delivery failed for email, slack")
        slack.send.assert_awaited_once()

    def test_unknown_project_is_a_datastore_error(self):
        dispatcher = NotificationDispatcher(FakeDatastore(), {}, APP_URL)

        with pytest.raises(DatastoreError):
            asyncio.run(dispatcher.handle(self._job(_event())))


class TestTransports:
    def test_slack_posts_text(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((str(request.url), json.loads(request.content)))
            return httpx.Response(200, text="ok")

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await SlackTransport(client).send(
                    ["https://hooks.slack.test/1"], "Subject", "Body"
                )

        assert asyncio.run(run()) is True
        assert seen == [("https://hooks.slack.test/1", {"text": "*Subject*\nBody"})]

    def test_webhook_error_status_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        async def run():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                await WebhookTransport(client).send(["https://hook.test/a"], "S", "B")

        with pytest.raises(TransportError):
            asyncio.run(run())

    def test_email_without_credentials_is_not_sent(self):
        transport = EmailTransport(SmtpSettings())
        assert asyncio.run(transport.send(["a@x.test"], "S", "<p>B</p>")) is False
