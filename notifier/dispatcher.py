from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from common.contracts import Datastore, NotificationTransport, Project, ScreenshotRecord
from common.errors import DatastoreError, PartialDeliveryError, TransportError, describe
from common.logger import get_logger
from notifier.templates import RenderedMessage, TemplateContext, render
from notifier.transports import CHANNEL_EMAIL, CHANNEL_SLACK, CHANNEL_WEBHOOK
from rabbit.models import Job, NotificationJobData


def _as_list(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v]


def recipients_for(project: Project) -> Dict[str, List[str]]:
    """Recipients per channel from ``config.integrations``; empty channels are dropped."""
    integrations = project.integrations
    email = integrations.get("email") or {}
    slack = integrations.get("slack") or {}
    webhook = integrations.get("webhook") or {}

    recipients = {
        CHANNEL_EMAIL: _as_list(email.get("recipients")),
        CHANNEL_SLACK: _as_list(slack.get("webhook")),
        CHANNEL_WEBHOOK: _as_list(webhook.get("urls")) or _as_list(webhook.get("url")),
    }
    return {channel: addresses for channel, addresses in recipients.items() if addresses}


@dataclass
class DispatchOutcome:
    sent: Dict[str, int] = field(default_factory=dict)
    skipped: bool = False


class NotificationDispatcher:
    """Handles jobs from the notification queue.

    Every channel gets one delivery attempt per job. A transport that
    raises or reports ``False`` fails the job with ``TransportError`` once
    the other channels have been tried; when some channels did deliver,
    ``PartialDeliveryError`` carries the job narrowed to the failed ones so
    a redelivery does not repeat the successful sends.
    """

    def __init__(
            self,
            datastore: Datastore,
            transports: Mapping[str, NotificationTransport],
            app_url: str,
    ) -> None:
        self._logger = get_logger(__name__)
        self._datastore = datastore
        self._transports = dict(transports)
        self._app_url = app_url

    async def handle(self, job: Job[NotificationJobData]) -> DispatchOutcome:
        event = job.data
        self._logger.info("Processing %s notification %s for project %s",
                          event.type.value, job.id, event.project_id)

        project = await self._datastore.get_project(event.project_id)
        if project is None:
            raise DatastoreError(f"Project {event.project_id} not found")

        recipients = recipients_for(project)
        if event.channels is not None:
            recipients = {c: a for c, a in recipients.items() if c in event.channels}
        if not recipients:
            self._logger.info("No recipients configured for project %s", project.id)
            return DispatchOutcome(skipped=True)

        screenshot = await self._screenshot(event.screenshot_id)
        message = render(TemplateContext(event, project, screenshot, self._app_url))
        if message is None:
            self._logger.warning("Nothing to render for %s notification %s", event.type.value, job.id)
            return DispatchOutcome(skipped=True)

        outcome = DispatchOutcome()
        failures: Dict[str, str] = {}
        for channel, addresses in recipients.items():
            transport = self._transports.get(channel)
            if transport is None:
                self._logger.warning("No transport for channel %s, %d recipient(s) skipped",
                                     channel, len(addresses))
                continue
            try:
                await self._send(transport, addresses, message)
            except TransportError as e:
                self._logger.error("Notification %s not delivered over %s: %s", job.id, channel, e)
                failures[channel] = str(e)
                continue
            outcome.sent[channel] = len(addresses)

        if failures:
            failed = sorted(failures)
            error = f"Delivery failed for {', '.join(failed)}: " + "; ".join(
                failures[c] for c in failed
            )
            if outcome.sent:
                raise PartialDeliveryError(error, event.model_copy(update={"channels": failed}))
            raise TransportError(error)

        self._logger.info("Notification %s sent: %s", job.id, outcome.sent)
        return outcome

    async def _screenshot(self, screenshot_id: Optional[str]) -> Optional[ScreenshotRecord]:
        if not screenshot_id:
            return None
        return await self._datastore.get_screenshot(screenshot_id)

    async def _send(
            self,
            transport: NotificationTransport,
            recipients: List[str],
            message: RenderedMessage,
    ) -> None:
        body = message.html if transport.channel == CHANNEL_EMAIL else message.text
        try:
            delivered = await transport.send(recipients, message.subject, body)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"{transport.channel} transport failed: {describe(e)}") from e

        if not delivered:
            raise TransportError(f"{transport.channel} transport did not deliver the message")
