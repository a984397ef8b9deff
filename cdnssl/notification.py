"""
Alert delivery.

Supports two e-mail channels:
- SMTP (with optional STARTTLS)
- SendGrid API
"""

import base64
import smtplib
from email.message import EmailMessage
from typing import List, Optional, Tuple

import requests

from .capabilities import CapabilityError, Notifier
from .config_loader import EmailNotificationConfig
from .context import CallContext
from .logger import get_logger

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
DEFAULT_TIMEOUT = 30

Attachment = Tuple[str, bytes, str]  # (filename, content, mime type)


class NotificationError(CapabilityError):
    """Raised when an alert cannot be delivered."""
    pass


def _timeout(context: Optional[CallContext]) -> float:
    if context is None:
        return DEFAULT_TIMEOUT
    context.check()
    return context.remaining(default=DEFAULT_TIMEOUT) or DEFAULT_TIMEOUT


class SmtpNotifier(Notifier):
    """Send e-mail through an SMTP server."""

    def __init__(self, config: EmailNotificationConfig):
        if not config.smtp_host:
            raise NotificationError("notifications.email.smtp_host is not configured")
        if not config.from_email:
            raise NotificationError("notifications.email.from_email is not configured")
        self.config = config
        self.logger = get_logger()

    def build_message(
        self,
        recipients: List[str],
        subject: str,
        text_body: str,
        html_body: str,
        attachments: Optional[List[Attachment]] = None,
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.config.from_email
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message.set_content(text_body or " ")
        if html_body:
            message.add_alternative(html_body, subtype="html")

        for filename, content, mime_type in attachments or []:
            maintype, _, subtype = mime_type.partition("/")
            message.add_attachment(
                content,
                maintype=maintype or "application",
                subtype=subtype or "octet-stream",
                filename=filename,
            )
        return message

    def send(
        self,
        recipients: List[str],
        subject: str,
        text_body: str,
        html_body: str,
        attachments: Optional[List[Attachment]] = None,
        context: Optional[CallContext] = None,
    ) -> None:
        """Send the message over SMTP."""
        message = self.build_message(recipients, subject, text_body, html_body, attachments)
        timeout = _timeout(context)

        try:
            with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=timeout) as smtp:
                if self.config.use_tls:
                    smtp.starttls()
                if self.config.username:
                    smtp.login(self.config.username, self.config.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP delivery failed: {e}")

        self.logger.debug(f"SMTP message sent to {len(recipients)} recipient(s)")


class SendGridNotifier(Notifier):
    """Send e-mail via the SendGrid API."""

    def __init__(self, config: EmailNotificationConfig):
        if not config.sendgrid_api_key or config.sendgrid_api_key.startswith("${"):
            raise NotificationError("SENDGRID_API_KEY not set")
        if not config.from_email:
            raise NotificationError("notifications.email.from_email is not configured")
        self.config = config
        self.logger = get_logger()

    def build_payload(
        self,
        recipients: List[str],
        subject: str,
        text_body: str,
        html_body: str,
        attachments: Optional[List[Attachment]] = None,
    ) -> dict:
        content = []
        if text_body:
            content.append({"type": "text/plain", "value": text_body})
        if html_body:
            content.append({"type": "text/html", "value": html_body})

        payload = {
            "personalizations": [
                {"to": [{"email": email} for email in recipients]}
            ],
            "from": {"email": self.config.from_email},
            "subject": subject,
            "content": content,
        }
        if attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(data).decode(),
                    "filename": filename,
                    "type": mime_type,
                }
                for filename, data, mime_type in attachments
            ]
        return payload

    def send(
        self,
        recipients: List[str],
        subject: str,
        text_body: str,
        html_body: str,
        attachments: Optional[List[Attachment]] = None,
        context: Optional[CallContext] = None,
    ) -> None:
        """Send the message through SendGrid."""
        payload = self.build_payload(recipients, subject, text_body, html_body, attachments)

        try:
            response = requests.post(
                SENDGRID_URL,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.config.sendgrid_api_key}",
                    "Content-Type": "application/json",
                },
                timeout=_timeout(context),
            )
        except requests.RequestException as e:
            raise NotificationError(f"SendGrid request failed: {e}")

        if response.status_code not in (200, 202):
            raise NotificationError(
                f"SendGrid API error: {response.status_code} - {response.text}"
            )

        self.logger.debug(f"SendGrid accepted message for {len(recipients)} recipient(s)")


def build_notifier(config: EmailNotificationConfig) -> Notifier:
    """
    Build the notifier for the configured e-mail provider.

    Raises:
        NotificationError: If the provider's settings are incomplete
    """
    if config.provider == "sendgrid":
        return SendGridNotifier(config)
    return SmtpNotifier(config)
