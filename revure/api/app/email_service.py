"""
Email service for shoot reminders and notification emails
"""
from __future__ import annotations

import logging
import smtplib
from collections.abc import Mapping
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any

import jinja2

from .config import settings

logger = logging.getLogger(__name__)

# Set up Jinja2 for email templates
templates_path = Path(__file__).parent / "templates" / "emails"
template_loader = jinja2.FileSystemLoader(searchpath=templates_path)
template_env = jinja2.Environment(loader=template_loader, autoescape=True)


@dataclass(frozen=True)
class EmailResult:
    success: bool
    error: str | None = None


class EmailService:
    """Email service for sending transactional emails"""

    def __init__(self):
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = settings.SMTP_PORT
        self.smtp_user = settings.SMTP_USER
        self.smtp_pass = settings.SMTP_PASS
        self.from_email = settings.EMAIL_FROM
        self.frontend_url = settings.FRONTEND_URL

    def _get_smtp_connection(self):
        """Get SMTP connection"""
        try:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port)
            _ = server.starttls()
            if self.smtp_user and self.smtp_pass:
                _ = server.login(self.smtp_user, self.smtp_pass)
            return server
        except Exception as e:
            logger.error("Failed to connect to SMTP server: %s", e)
            raise

    def _send_email(
        self, to_email: str, subject: str, html_content: str, text_content: str | None = None
    ) -> EmailResult:
        """Send email using SMTP"""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to_email

        if text_content:
            msg.attach(MIMEText(text_content, "plain"))
        msg.attach(MIMEText(html_content, "html"))

        try:
            if self.smtp_user and self.smtp_pass:
                server = self._get_smtp_connection()
                _ = server.send_message(msg)
                _ = server.quit()
                logger.info("Email sent successfully to %s", to_email)
            else:
                # In development, just log the email
                logger.info("DEV MODE - Would send email to %s", to_email)
                logger.info("Subject: %s", subject)
                logger.debug("Content: %s...", html_content[:200])
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", to_email, e)
            return EmailResult(success=False, error=str(e))
        return EmailResult(success=True)

    def _render(self, template_name: str, context: Mapping[str, Any], fallback: str) -> str:
        """Render a template, falling back to simple inline HTML"""
        try:
            template = template_env.get_template(template_name)
            return template.render(frontend_url=self.frontend_url, **context)
        except jinja2.TemplateError as e:
            logger.warning("Failed to load email template %s: %s", template_name, e)
            return fallback

    @staticmethod
    def _require(payload: Mapping[str, Any], *fields: str) -> str | None:
        missing = [name for name in fields if not payload.get(name)]
        if missing:
            return f"Missing email payload fields: {', '.join(missing)}"
        return None

    def send_shoot_reminder_5_days_email(self, payload: Mapping[str, Any]) -> EmailResult:
        error = self._require(payload, "to_email", "booking_id")
        if error:
            return EmailResult(success=False, error=error)
        html_content = self._render(
            "shoot_reminder_5_days.html",
            payload,
            f"""
            <html>
                <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
                    <p>Hi {payload.get('first_name', 'there')},</p>
                    <p>Your shoot is coming up on {payload.get('shoot_date')}
                       from {payload.get('start_time')} to {payload.get('end_time')}
                       at {payload.get('shoot_location_address')}.</p>
                </body>
            </html>
            """,
        )
        text_content = f"""
Hi {payload.get('first_name', 'there')},

Your shoot is coming up in 5 days.

Date: {payload.get('shoot_date')}
Time: {payload.get('start_time')} - {payload.get('end_time')}
Location: {payload.get('shoot_location_address')}
"""
        return self._send_email(
            payload["to_email"], "Your shoot is 5 days away", html_content, text_content
        )

    def send_shoot_reminder_2_hours_email(self, payload: Mapping[str, Any]) -> EmailResult:
        error = self._require(payload, "to_email", "booking_id")
        if error:
            return EmailResult(success=False, error=error)
        html_content = self._render(
            "shoot_reminder_2_hours.html",
            payload,
            f"""
            <html>
                <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
                    <p>Hi {payload.get('first_name', 'there')},</p>
                    <p>{payload.get('cp_name')} will see you at {payload.get('start_time')}
                       at {payload.get('shoot_location_address')}.</p>
                </body>
            </html>
            """,
        )
        text_content = f"""
Hi {payload.get('first_name', 'there')},

Your shoot starts in about two hours.

Time: {payload.get('start_time')} - {payload.get('end_time')}
Location: {payload.get('shoot_location_address')}
Creative Partner: {payload.get('cp_name')}
"""
        return self._send_email(
            payload["to_email"], "Your shoot starts in 2 hours", html_content, text_content
        )

    def send_shoot_completion_email(self, payload: Mapping[str, Any]) -> EmailResult:
        error = self._require(payload, "to_email", "booking_id")
        if error:
            return EmailResult(success=False, error=error)
        next_step = (
            "Our editors are now working on your footage."
            if payload.get("has_editing")
            else "Your raw footage will be delivered shortly."
        )
        html_content = self._render(
            "shoot_completion.html",
            payload,
            f"""
            <html>
                <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
                    <p>Hi {payload.get('first_name', 'there')},</p>
                    <p>Thanks for shooting with {payload.get('cp_name')}. {next_step}</p>
                </body>
            </html>
            """,
        )
        text_content = f"""
Hi {payload.get('first_name', 'there')},

Thanks for shooting with {payload.get('cp_name')}.
{next_step}
"""
        return self._send_email(
            payload["to_email"], "Thanks for shooting with Revure", html_content, text_content
        )

    def send_final_nudge_7_days_email(self, payload: Mapping[str, Any]) -> EmailResult:
        error = self._require(payload, "to_email", "booking_id")
        if error:
            return EmailResult(success=False, error=error)
        html_content = self._render(
            "shoot_final_nudge.html",
            payload,
            f"""
            <html>
                <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
                    <p>Hi {payload.get('first_name', 'there')},</p>
                    <p>How did your shoot with {payload.get('cp_name')} go?
                       Book your next shoot at <a href="{self.frontend_url}">{self.frontend_url}</a>.</p>
                </body>
            </html>
            """,
        )
        text_content = f"""
Hi {payload.get('first_name', 'there')},

How did your shoot with {payload.get('cp_name')} go?
Book your next shoot: {self.frontend_url}
"""
        return self._send_email(
            payload["to_email"], "How was your shoot?", html_content, text_content
        )

    def send_notification_email(
        self, to_email: str, title: str, message: str, action_url: str | None = None
    ) -> EmailResult:
        html_content = self._render(
            "notification.html",
            {"title": title, "message": message, "action_url": action_url},
            f"""
            <html>
                <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
                    <h2>{title}</h2>
                    <p>{message}</p>
                </body>
            </html>
            """,
        )
        text_content = f"{title}\n\n{message}\n"
        if action_url:
            text_content += f"\n{action_url}\n"
        return self._send_email(to_email, title, html_content, text_content)


email_service = EmailService()
