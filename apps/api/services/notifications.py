"""Email notification sink and message rendering."""

from __future__ import annotations

import asyncio
import html
import logging
from typing import Any, Dict, List, Optional, Sequence

import resend

from config import settings

logger = logging.getLogger(__name__)


class EmailDelivery:
    """Resend-backed sink; delivery failures are logged and reported as False."""

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        if not self.api_key:
            logger.warning("RESEND_API_KEY not set - email delivery disabled")
        self.from_email = from_email or settings.NOTIFICATION_FROM_EMAIL
        if self.api_key:
            resend.api_key = self.api_key

    def _send(self, recipients: List[str], subject: str, html_body: str) -> Dict[str, Any]:
        params = {
            "from": f"{settings.NOTIFICATION_FROM_NAME} <{self.from_email}>",
            "to": recipients,
            "subject": subject,
            "html": html_body,
        }
        return resend.Emails.send(params)

    async def deliver(self, recipients: Sequence[str], subject: str, html_body: str) -> bool:
        recipients = [r for r in (str(x or "").strip() for x in recipients) if r]
        if not recipients:
            logger.info("No recipients for %r; skipping delivery", subject)
            return False
        if not self.api_key:
            logger.warning("Email delivery not configured; dropping %r for %s recipient(s)", subject, len(recipients))
            return False
        try:
            response = await asyncio.to_thread(self._send, recipients, subject, html_body)
        except Exception as exc:
            logger.error("Email delivery failed for %r: %s", subject, exc)
            return False
        logger.info("Email %r sent to %s recipient(s): %s", subject, len(recipients), (response or {}).get("id", "unknown"))
        return True


def _esc(value: Any) -> str:
    return html.escape(str(value if value is not None else ""))


def _item_link(item: Dict[str, Any]) -> str:
    title = _esc(item.get("title") or "(untitled)")
    permalink = item.get("permalink")
    if permalink:
        return f'<a href="{_esc(permalink)}">{title}</a>'
    return title


def render_alert_email(
    tenant_label: str,
    window_hours: int,
    sections: Sequence[Dict[str, Any]],
) -> str:
    """Consolidated alert body grouped by category.

    Each section: category, count, avg_sentiment, comments, trending,
    reasons (list of str) and top_items (dicts with title, permalink,
    score, num_comments).
    """
    parts = [
        "<html><body style=\"font-family: Arial, sans-serif;\">",
        f"<h2>Feedback alert for {_esc(tenant_label)}</h2>",
        f"<p>Activity over the last {int(window_hours)} hour(s) crossed your alert thresholds.</p>",
    ]
    for section in sections:
        trending = " <strong>(trending)</strong>" if section.get("trending") else ""
        avg = section.get("avg_sentiment")
        avg_text = f"{avg:.2f}" if isinstance(avg, (int, float)) else "n/a"
        parts.append(f"<h3>{_esc(section.get('category'))}{trending}</h3>")
        parts.append(
            "<p>"
            f"Posts: {int(section.get('count') or 0)} | "
            f"Average sentiment: {avg_text} | "
            f"Comments: {int(section.get('comments') or 0)}"
            "</p>"
        )
        reasons = section.get("reasons") or []
        if reasons:
            parts.append("<p>Triggered by: " + ", ".join(_esc(r) for r in reasons) + "</p>")
        parts.append("<ul>")
        for item in section.get("top_items") or []:
            parts.append(
                f"<li>{_item_link(item)} (score {int(item.get('score') or 0)}, "
                f"{int(item.get('num_comments') or 0)} comments)</li>"
            )
        parts.append("</ul>")
    parts.append("</body></html>")
    return "\n".join(parts)


def render_bucket_email(bucket_name: str, items: Sequence[Dict[str, Any]]) -> str:
    parts = [
        "<html><body style=\"font-family: Arial, sans-serif;\">",
        f"<h2>New posts added to bucket \"{_esc(bucket_name)}\"</h2>",
        f"<p>{len(items)} post(s) were matched automatically.</p>",
        "<ul>",
    ]
    for item in items:
        confidence = item.get("confidence")
        confidence_text = f" ({float(confidence) * 100:.0f}% match)" if confidence is not None else ""
        parts.append(f"<li>{_item_link(item)}{confidence_text}</li>")
    parts.extend(["</ul>", "</body></html>"])
    return "\n".join(parts)
