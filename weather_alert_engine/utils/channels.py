"""
Notification channels.

  InAppChannel   writes a NotificationRecord through the store
  EmailChannel   sends a plain + HTML message over SMTP (STARTTLS)

`deliver()` returns a ChannelOutcome on success and raises NotificationError
when the channel rejects the message. Neither channel retries.
"""

from __future__ import annotations

import logging
import smtplib
import socket
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any

from ..config import SMTP_TIMEOUT_S, Settings
from ..exceptions import NotificationError, StoreError
from ..models import Channel, Farmer, NotificationRecord, Severity

logger = logging.getLogger(__name__)

SEVERITY_COLOURS = {
    Severity.LOW: "#2e7d32",
    Severity.MEDIUM: "#f9a825",
    Severity.HIGH: "#ef6c00",
    Severity.CRITICAL: "#c62828",
}


@dataclass(frozen=True)
class ChannelOutcome:
    channel: Channel
    delivered: bool
    error: str | None = None
    record_id: str | None = None


class InAppChannel:
    channel = Channel.IN_APP

    def __init__(self, store):
        self.store = store

    def deliver(
        self,
        farmer: Farmer,
        title: str,
        message: str,
        severity: Severity,
        data: dict[str, Any] | None = None,
    ) -> ChannelOutcome:
        data = data or {}
        record = NotificationRecord(
            farmer_id=farmer.farmer_id,
            alert_id=data.get("alert_id"),
            channel=self.channel,
            title=title,
            message=message,
            severity=severity,
            data=data,
        )
        try:
            self.store.insert_notification(record)
        except StoreError as exc:
            raise NotificationError(f"in-app notification for {farmer.farmer_id} not stored: {exc}") from exc
        return ChannelOutcome(self.channel, delivered=True, record_id=record.notification_id)


def render_email_html(title: str, message: str, severity: Severity, recommendations: list[str]) -> str:
    items = "".join(f"<li>{escape(r)}</li>" for r in recommendations)
    colour = SEVERITY_COLOURS.get(severity, "#333333")
    return (
        f"<h2 style=\"color:{colour}\">{escape(title)}</h2>"
        f"<p><strong>Severity:</strong> {escape(severity.value.upper())}</p>"
        f"<p>{escape(message)}</p>"
        + (f"<h3>Recommended actions</h3><ul>{items}</ul>" if items else "")
    )


class EmailChannel:
    channel = Channel.EMAIL

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        sender: str | None = None,
        timeout: float = SMTP_TIMEOUT_S,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailChannel | None":
        if not settings.email_enabled:
            return None
        return cls(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.smtp_sender,
        )

    def build_message(self, recipient: str, title: str, message: str, severity: Severity, recommendations: list[str]) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = title
        msg["From"] = self.sender
        msg["To"] = recipient
        lines = [message, ""] + [f"- {r}" for r in recommendations]
        msg.attach(MIMEText("\n".join(lines).strip(), "plain", "utf-8"))
        msg.attach(MIMEText(render_email_html(title, message, severity, recommendations), "html", "utf-8"))
        return msg

    def deliver(
        self,
        farmer: Farmer,
        title: str,
        message: str,
        severity: Severity,
        data: dict[str, Any] | None = None,
    ) -> ChannelOutcome:
        if not farmer.email:
            raise NotificationError(f"farmer {farmer.farmer_id} has no email address")
        recommendations = list((data or {}).get("recommendations") or [])
        msg = self.build_message(farmer.email, title, message, severity, recommendations)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(self.user, self.password)
                server.sendmail(self.sender, [farmer.email], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            raise NotificationError("SMTP authentication failed, check SMTP_USER / SMTP_PASSWORD") from exc
        except (smtplib.SMTPException, socket.timeout, OSError) as exc:
            raise NotificationError(f"email to {farmer.email} failed: {exc}") from exc
        logger.debug("Email sent to %s: %s", farmer.email, title)
        return ChannelOutcome(self.channel, delivered=True)
