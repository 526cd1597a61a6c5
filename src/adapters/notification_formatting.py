"""Shared notification formatting helpers.

Keeping formatting here prevents drift between push adapters and keeps
messages consistent regardless of delivery channel.
"""

from __future__ import annotations

import html
from datetime import datetime
from typing import Optional

from core.models import NotificationPayload, Priority

DIVIDER = "──────────────"

PRIORITY_MARKERS = {
    Priority.HIGH: "🔴",
    Priority.MEDIUM: "🟡",
    Priority.LOW: "⚪",
}


def action_url(payload: NotificationPayload, frontend_base_url: Optional[str]) -> Optional[str]:
    """Return the absolute link for the payload's action, if one can be built."""

    if not payload.action:
        return None
    if payload.action.startswith(("http://", "https://")):
        return payload.action
    if not frontend_base_url:
        return None
    return f"{frontend_base_url.rstrip('/')}/{payload.action.lstrip('/')}"


def _format_text(payload: NotificationPayload, frontend_base_url: Optional[str], sent_at: datetime) -> str:
    """Plain text body used by the log sender."""

    timestamp = sent_at.astimezone().strftime("%H:%M:%S %d-%m-%Y")
    lines = [
        f"[{timestamp}] {PRIORITY_MARKERS[payload.priority]} {payload.title}",
        DIVIDER,
        payload.message,
    ]
    link = action_url(payload, frontend_base_url)
    if link:
        lines.extend(["", f"Open: {link}"])
    return "\n".join(lines)


def _format_html(payload: NotificationPayload, frontend_base_url: Optional[str], sent_at: datetime) -> str:
    """HTML body used by the Bot API adapter."""

    timestamp = html.escape(sent_at.astimezone().strftime("%H:%M:%S %d-%m-%Y"))
    parts = [
        f"{PRIORITY_MARKERS[payload.priority]} <b>{html.escape(payload.title)}</b>",
        f"[{timestamp}]",
        DIVIDER,
        "",
        html.escape(payload.message),
    ]
    link = action_url(payload, frontend_base_url)
    if link:
        safe_link = html.escape(link)
        parts.extend(["", f"<a href=\"{safe_link}\">Open in app</a>"])
    if payload.priority is Priority.HIGH:
        parts.extend(["", "<i>Action required</i>"])
    return "\n".join(parts)


def format_push(
    payload: NotificationPayload,
    mode: str,
    frontend_base_url: Optional[str] = None,
    sent_at: Optional[datetime] = None,
) -> str:
    """Return the notification formatted for the requested mode."""

    sent_at = sent_at or datetime.now().astimezone()
    if mode == "text":
        return _format_text(payload, frontend_base_url, sent_at)
    if mode == "html":
        return _format_html(payload, frontend_base_url, sent_at)
    raise ValueError(f"Unsupported notification format: {mode}")
