from dataclasses import dataclass
from html import escape
from typing import Callable, Dict, Optional

from common.contracts import Project, ScreenshotRecord
from rabbit.models import NotificationJobData, NotificationType

BRAND = "Screenshot Monitor"

_STYLE = """
body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
.container { max-width: 600px; margin: 0 auto; padding: 20px; }
.header { background-color: %(accent)s; color: white; padding: 20px; text-align: center; }
.content { padding: 20px; background-color: #f4f4f4; }
.button { display: inline-block; padding: 10px 20px; background-color: #4F46E5; color: white; text-decoration: none; border-radius: 5px; margin: 5px; }
.footer { text-align: center; padding: 20px; color: #666; font-size: 12px; }
"""


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    html: str
    text: str


@dataclass(frozen=True)
class TemplateContext:
    event: NotificationJobData
    project: Project
    screenshot: Optional[ScreenshotRecord]
    app_url: str

    @property
    def screenshot_name(self) -> str:
        if self.screenshot is not None:
            return self.screenshot.display_name
        return self.event.screenshot_id or "unknown screenshot"

    @property
    def page_url(self) -> Optional[str]:
        return self.screenshot.url if self.screenshot is not None else None

    @property
    def project_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/projects/{self.project.id}"


def _page(title: str, accent: str, sections: list) -> str:
    return (
        "<!DOCTYPE html><html><head><style>"
        + _STYLE % {"accent": accent}
        + "</style></head><body><div class=\"container\">"
        + f"<div class=\"header\"><h1>{escape(title)}</h1></div>"
        + "<div class=\"content\">" + "".join(sections) + "</div>"
        + f"<div class=\"footer\"><p>{BRAND} - Automated Screenshot Management</p>"
        + "<p>You received this email because you have notifications enabled for this project.</p>"
        + "</div></div></body></html>"
    )


def _link(href: Optional[str], label: str) -> str:
    if not href:
        return ""
    return f"<p><a href=\"{escape(href)}\" class=\"button\">{escape(label)}</a></p>"


def _screenshot_captured(ctx: TemplateContext) -> RenderedMessage:
    image_url = ctx.screenshot.image_url if ctx.screenshot else None
    subject = f"[{BRAND}] Screenshot captured: {ctx.screenshot_name}"
    html = _page("Screenshot Captured Successfully", "#4F46E5", [
        f"<h2>Project: {escape(ctx.project.name)}</h2>",
        f"<p><strong>Screenshot:</strong> {escape(ctx.screenshot_name)}</p>",
        f"<p><strong>URL:</strong> {escape(ctx.page_url or '-')}</p>",
        _link(image_url, "View Screenshot"),
    ])
    text = "\n".join(filter(None, [
        f"Screenshot captured for project {ctx.project.name}",
        f"Screenshot: {ctx.screenshot_name}",
        f"URL: {ctx.page_url}" if ctx.page_url else None,
        f"Image: {image_url}" if image_url else None,
    ]))
    return RenderedMessage(subject, html, text)


def _diff_detected(ctx: TemplateContext) -> RenderedMessage:
    diff = ctx.event.diff_data
    percentage = diff.percentage_diff if diff else (
        ctx.screenshot.diff_percentage if ctx.screenshot and ctx.screenshot.diff_percentage else 0.0
    )
    diff_url = ctx.event.diff_image_url or (ctx.screenshot.diff_image_url if ctx.screenshot else None)

    subject = f"[{BRAND}] Changes detected: {ctx.screenshot_name}"
    details = ""
    if diff:
        details = (
            f"<p><strong>Changed pixels:</strong> {diff.pixel_diff:,} of {diff.total_pixels:,}</p>"
        )
    html = _page("Visual Changes Detected", "#F59E0B", [
        f"<h2>Project: {escape(ctx.project.name)}</h2>",
        f"<p><strong>Screenshot:</strong> {escape(ctx.screenshot_name)}</p>",
        f"<p><strong>Change:</strong> {percentage:.2f}% of the page</p>",
        details,
        _link(diff_url, "View Diff"),
        _link(ctx.project_url, "Review Changes"),
    ])
    text = "\n".join(filter(None, [
        f"Visual changes detected in project {ctx.project.name}",
        f"Screenshot: {ctx.screenshot_name}",
        f"Change: {percentage:.2f}%",
        f"Changed pixels: {diff.pixel_diff} of {diff.total_pixels}" if diff else None,
        f"Diff: {diff_url}" if diff_url else None,
        f"Review: {ctx.project_url}",
    ]))
    return RenderedMessage(subject, html, text)


def _screenshot_failed(ctx: TemplateContext) -> RenderedMessage:
    error = ctx.event.message or "Unknown error"
    subject = f"[{BRAND}] Screenshot failed: {ctx.screenshot_name}"
    html = _page("Screenshot Capture Failed", "#DC2626", [
        f"<h2>Project: {escape(ctx.project.name)}</h2>",
        f"<p><strong>Screenshot:</strong> {escape(ctx.screenshot_name)}</p>",
        f"<p><strong>URL:</strong> {escape(ctx.page_url or '-')}</p>",
        f"<p><strong>Error:</strong> {escape(error)}</p>",
        _link(ctx.project_url, "Open Project"),
    ])
    text = "\n".join(filter(None, [
        f"Screenshot capture failed in project {ctx.project.name}",
        f"Screenshot: {ctx.screenshot_name}",
        f"URL: {ctx.page_url}" if ctx.page_url else None,
        f"Error: {error}",
    ]))
    return RenderedMessage(subject, html, text)


def _project_summary(ctx: TemplateContext) -> Optional[RenderedMessage]:
    summary = ctx.event.summary
    if summary is None:
        return None

    period = ctx.event.period or "Daily"
    rows = [
        ("Screenshots", summary.total_screenshots),
        ("Changes detected", summary.changes_detected),
        ("Pending approval", summary.pending_approval),
        ("Failed", summary.failed),
    ]
    subject = f"[{BRAND}] {period} summary: {ctx.project.name}"
    html = _page(f"{period} Project Summary", "#4F46E5", [
        f"<h2>Project: {escape(ctx.project.name)}</h2>",
        "<ul>" + "".join(f"<li><strong>{k}:</strong> {v}</li>" for k, v in rows) + "</ul>",
        _link(ctx.project_url, "Open Dashboard"),
    ])
    text = "\n".join(
        [f"{period} summary for project {ctx.project.name}"]
        + [f"{k}: {v}" for k, v in rows]
    )
    return RenderedMessage(subject, html, text)


def _bulk_changes(ctx: TemplateContext) -> Optional[RenderedMessage]:
    changes = ctx.event.changes or []
    if not changes:
        return None

    subject = f"[{BRAND}] {len(changes)} screenshots changed in {ctx.project.name}"
    items = "".join(
        f"<li>{escape(c.screenshot_name)}: {c.percentage_diff:.2f}%</li>" for c in changes
    )
    html = _page("Multiple Visual Changes Detected", "#F59E0B", [
        f"<h2>Project: {escape(ctx.project.name)}</h2>",
        f"<ul>{items}</ul>",
        _link(ctx.project_url, "Review Changes"),
    ])
    text = "\n".join(
        [f"{len(changes)} screenshots changed in project {ctx.project.name}"]
        + [f"- {c.screenshot_name}: {c.percentage_diff:.2f}%" for c in changes]
    )
    return RenderedMessage(subject, html, text)


_TEMPLATES: Dict[NotificationType, Callable[[TemplateContext], Optional[RenderedMessage]]] = {
    NotificationType.SCREENSHOT_CAPTURED: _screenshot_captured,
    NotificationType.DIFF_DETECTED: _diff_detected,
    NotificationType.SCREENSHOT_FAILED: _screenshot_failed,
    NotificationType.PROJECT_SUMMARY: _project_summary,
    NotificationType.BULK_CHANGES: _bulk_changes,
}


def render(ctx: TemplateContext) -> Optional[RenderedMessage]:
    """Subject and bodies for the event, or None when it lacks the data to render."""
    return _TEMPLATES[ctx.event.type](ctx)
