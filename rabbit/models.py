from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Generic, List, Optional, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, HttpUrl, TypeAdapter
from pydantic.alias_generators import to_camel

_HTTP_URL = TypeAdapter(HttpUrl)


class _Payload(BaseModel):
    """Queue payloads travel as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_url(value: str) -> str:
    # validated as an http(s) URL but kept verbatim
    _HTTP_URL.validate_python(value)
    return value


UrlStr = Annotated[str, AfterValidator(_check_url)]


class Viewport(_Payload):
    width: int = Field(default=1920, ge=320, le=3840)
    height: int = Field(default=1080, ge=240, le=2160)


class ScreenshotJobData(_Payload):
    project_id: str = Field(min_length=1)
    screenshot_id: str = Field(min_length=1)
    url: UrlStr
    selector: Optional[str] = None
    viewport: Optional[Viewport] = None


class DiffJobData(_Payload):
    screenshot_id: str = Field(min_length=1)
    current_image_url: UrlStr
    previous_image_url: UrlStr


class NotificationType(str, Enum):
    SCREENSHOT_CAPTURED = "screenshot_captured"
    DIFF_DETECTED = "diff_detected"
    SCREENSHOT_FAILED = "screenshot_failed"
    PROJECT_SUMMARY = "project_summary"
    BULK_CHANGES = "bulk_changes"


class DiffData(_Payload):
    pixel_diff: int
    percentage_diff: float
    total_pixels: int


class ProjectSummary(_Payload):
    total_screenshots: int
    changes_detected: int
    pending_approval: int
    failed: int


class ChangeItem(_Payload):
    screenshot_name: str
    percentage_diff: float
    url: Optional[str] = None


class NotificationJobData(_Payload):
    type: NotificationType
    project_id: str = Field(min_length=1)
    screenshot_id: Optional[str] = None
    message: str = ""
    diff_image_url: Optional[str] = None
    diff_data: Optional[DiffData] = None
    summary: Optional[ProjectSummary] = None
    changes: Optional[List[ChangeItem]] = None
    period: Optional[str] = None
    # set on redelivery to the channels that still need the message
    channels: Optional[List[str]] = None


P = TypeVar("P", bound=BaseModel)


@dataclass(frozen=True)
class Job(Generic[P]):
    id: str
    queue: str
    data: P
    attempt: int = 1
