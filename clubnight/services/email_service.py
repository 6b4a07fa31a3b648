"""
Email channel using SendGrid for sending notifications.
"""

import asyncio
import html
import logging
from typing import Optional

from dotenv import load_dotenv
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email, To, Content

from clubnight.database.models import NotificationType
from clubnight.utils.env_utils import get_bool_env, get_int_env, get_str_env

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# SendGrid Configuration
SENDGRID_API_KEY = get_str_env("SENDGRID_API_KEY")
SENDGRID_FROM_EMAIL = get_str_env("SENDGRID_FROM_EMAIL", "noreply@clubnight.app")
SENDGRID_FROM_NAME = get_str_env("SENDGRID_FROM_NAME", "Club Night")
ENABLE_EMAIL = get_bool_env("ENABLE_EMAIL", default=True)
FRONTEND_URL = get_str_env("FRONTEND_URL", "http://localhost:5173").rstrip("/")
CHANNEL_TIMEOUT_SECONDS = get_int_env("CHANNEL_TIMEOUT_SECONDS", 10)

DEFAULT_ICON = "🏸"
NOTIFICATION_ICONS = {
    NotificationType.SESSION_REMINDER.value: "⏰",
    NotificationType.RSVP_DEADLINE.value: "📅",
    NotificationType.WAITLIST_UPDATE.value: "🎉",
    NotificationType.ADMIN_ANNOUNCEMENT.value: "📢",
}

EMAIL_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 0; background-color: #f8fafc;">
    <div style="background-color: #0891b2; color: white; padding: 24px; text-align: center;">
        <h1 style="margin: 0; font-size: 24px;">{default_icon} {club_name}</h1>
    </div>
    <div style="padding: 24px; background-color: white;">
        <div style="font-size: 32px; text-align: center; margin-bottom: 16px;">{icon}</div>
        <h2 style="color: #1e293b; margin-top: 0;">{title}</h2>
        <p style="color: #475569; font-size: 16px; line-height: 1.6;">{body}</p>
        <div style="text-align: center; margin-top: 24px;">
            <a href="{frontend_url}/dashboard" style="display: inline-block; background-color: #0891b2; color: white; padding: 12px 24px; text-decoration: none; border-radius: 8px; font-weight: 600;">View Dashboard</a>
        </div>
    </div>
    <div style="background-color: #f1f5f9; padding: 16px; text-align: center; font-size: 12px; color: #64748b;">
        <p style="margin: 0 0 8px 0;">You received this email because you have notifications enabled for {club_name}.</p>
        <p style="margin: 0;"><a href="{frontend_url}/profile" style="color: #0891b2;">Manage your notification preferences</a></p>
    </div>
</body>
</html>
"""


def render_email_html(
    title: str,
    body: str,
    kind: str,
    frontend_url: str = FRONTEND_URL,
    club_name: str = SENDGRID_FROM_NAME,
) -> str:
    """Styled HTML email with a per-kind icon and dashboard/profile links."""
    return EMAIL_TEMPLATE.format(
        default_icon=DEFAULT_ICON,
        icon=NOTIFICATION_ICONS.get(kind, DEFAULT_ICON),
        title=html.escape(title),
        body=html.escape(body),
        frontend_url=frontend_url,
        club_name=html.escape(club_name),
    )


def render_email_text(body: str, frontend_url: str = FRONTEND_URL) -> str:
    """Plain-text alternative body."""
    return "\n".join(
        [
            body,
            "",
            f"View dashboard: {frontend_url}/dashboard",
            f"Manage your notification preferences: {frontend_url}/profile",
        ]
    )


class EmailChannel:
    """Email delivery through SendGrid."""

    def __init__(
        self,
        api_key: Optional[str] = SENDGRID_API_KEY,
        from_email: str = SENDGRID_FROM_EMAIL,
        from_name: str = SENDGRID_FROM_NAME,
        enabled: bool = ENABLE_EMAIL,
        timeout: float = CHANNEL_TIMEOUT_SECONDS,
        frontend_url: str = FRONTEND_URL,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout
        self.frontend_url = frontend_url
        self._enabled = bool(enabled and api_key)
        if not self._enabled:
            logger.info("SendGrid not configured, email notifications disabled")

    @property
    def enabled(self) -> bool:
        return self._enabled

    def render(self, title: str, body: str, kind: str):
        """(html, text) bodies for a notification."""
        return (
            render_email_html(title, body, kind, self.frontend_url, self.from_name),
            render_email_text(body, self.frontend_url),
        )

    async def send(
        self,
        to_email: str,
        to_name: Optional[str],
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """
        Send one email via SendGrid.

        The blocking SendGrid client runs in a worker thread with a bounded
        timeout.

        Returns:
            bool: True if SendGrid accepted the message, False otherwise
        """
        if not self._enabled:
            return False

        message = Mail(
            from_email=Email(self.from_email, self.from_name),
            to_emails=To(to_email, to_name),
            subject=subject,
            plain_text_content=Content("text/plain", text_body),
            html_content=Content("text/html", html_body),
        )

        try:
            sg = SendGridAPIClient(self.api_key)
            response = await asyncio.wait_for(
                asyncio.to_thread(sg.send, message), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"SendGrid timed out after {self.timeout}s sending to {to_email}")
            return False
        except Exception as e:
            logger.error(f"Failed to send email to {to_email}: {str(e)}")
            return False

        if 200 <= response.status_code < 300:
            logger.info(f"Email sent to {to_email}: {subject}")
            return True
        logger.error(f"SendGrid returned status {response.status_code}: {response.body}")
        return False
