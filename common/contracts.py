"""Collaborator interfaces the pipeline workers are written against.

Concrete implementations live in ``capture.playwrt``, ``storage.filesystem``,
``datastore.repository``, ``notifier.transports`` and ``rabbit.broker``; the
workers only ever see these protocols so tests can pass in-memory fakes.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel

from rabbit.models import Viewport


class ScreenshotStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ScreenshotStatus.COMPLETED, ScreenshotStatus.FAILED})


class WaitPolicy(str, Enum):
    NETWORK_IDLE = "networkidle"
    LOAD = "load"
    DOM_CONTENT_LOADED = "domcontentloaded"


@dataclass(frozen=True)
class CaptureOptions:
    """Extras applied to the page before the screenshot is taken."""

    hide_elements: Tuple[str, ...] = ()
    custom_css: Optional[str] = None
    user_agent: Optional[str] = None
    settle_ms: int = 1000


@dataclass(frozen=True)
class CaptureMetadata:
    url: str
    viewport: Viewport
    full_page: bool
    selector: Optional[str]
    duration_ms: int
    size: int
    timestamp: datetime


@dataclass(frozen=True)
class UploadResult:
    key: str
    public_url: str
    size: int


@dataclass
class ScreenshotRecord:
    id: str
    project_id: str
    url: str
    status: ScreenshotStatus = ScreenshotStatus.PENDING
    name: Optional[str] = None
    selector: Optional[str] = None
    viewport: Optional[Viewport] = None
    image_url: Optional[str] = None
    last_image_url: Optional[str] = None
    diff_image_url: Optional[str] = None
    diff_percentage: Optional[float] = None
    error: Optional[str] = None
    version: int = 0
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.name or self.url


@dataclass(frozen=True)
class ImageSwap:
    """Record after an image swap and the image the swap pushed out, if any."""

    record: ScreenshotRecord
    displaced_image_url: Optional[str] = None


@dataclass
class Project:
    id: str
    name: str
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def integrations(self) -> Dict[str, Any]:
        return (self.config or {}).get("integrations") or {}


class HeadlessBrowser(Protocol):
    async def capture(
            self,
            url: str,
            selector: Optional[str],
            viewport: Viewport,
            wait_policy: WaitPolicy,
    ) -> Tuple[bytes, CaptureMetadata]:
        ...


class BlobStorage(Protocol):
    async def upload(
            self,
            namespace: str,
            id: str,
            data: bytes,
            metadata: Mapping[str, str],
    ) -> UploadResult:
        ...

    async def fetch(self, url: str) -> bytes:
        ...


class Datastore(Protocol):
    async def get_screenshot(self, id: str) -> Optional[ScreenshotRecord]:
        ...

    async def update_screenshot(self, id: str, fields: Mapping[str, Any]) -> None:
        ...

    async def swap_image(
            self,
            id: str,
            image_url: str,
            expected_version: int,
    ) -> ImageSwap:
        ...

    async def get_project(self, id: str) -> Optional[Project]:
        ...

    async def ping(self) -> None:
        ...


class NotificationTransport(Protocol):
    channel: str

    async def send(self, recipients: Sequence[str], subject: str, body: str) -> bool:
        ...


class JobQueue(Protocol):
    async def enqueue(
            self,
            queue_name: str,
            payload: BaseModel,
            job_id: Optional[str] = None,
    ) -> str:
        ...

