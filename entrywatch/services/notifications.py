from __future__ import annotations

import logging
import os
import smtplib
from dataclasses import dataclass
from datetime import date
from email.message import EmailMessage
from typing import Any

from entrywatch.errors import DispatchError
from entrywatch.settings import get_settings

logger = logging.getLogger("entrywatch.notifications")

SMTP_TIMEOUT_SECONDS = 15


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    recipients: list[str]
    subject: str
    body: str


@dataclass(frozen=True, slots=True)
class MissingEntryAlert:
    user_name: str
    user_email: str
    unit_name: str
    date: str
    entry_form_link: str


@dataclass(frozen=True, slots=True)
class DispatchResult:
    ok: bool
    recipient: str
    reason: str | None = None


class NotificationChannel:
    configured: bool = False

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        raise NotImplementedError


class EmailChannel(NotificationChannel):
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = bool(settings.notification_email_enabled)
        self.smtp_host = (os.getenv("SMTP_HOST") or "").strip()
        self.smtp_port = int((os.getenv("SMTP_PORT") or "587").strip() or "587")
        self.smtp_user = (os.getenv("SMTP_USER") or "").strip()
        self.smtp_pass = os.getenv("SMTP_PASS") or ""
        self.smtp_from = (os.getenv("SMTP_FROM") or "").strip()
        self.smtp_use_tls = (os.getenv("SMTP_USE_TLS") or "true").strip().lower() not in {"0", "false", "no"}
        self.configured = bool(self.smtp_host and self.smtp_from)

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        recipients = [item.strip() for item in message.recipients if item and item.strip()]
        if not self.enabled:
            logger.info(
                "email_channel_disabled",
                extra={
                    "subject": message.subject,
                    "recipient_count": len(recipients),
                },
            )
            return {"mode": "disabled", "sent": 0, "recipients": recipients}
        if not recipients:
            return {"mode": "skipped_no_recipients", "sent": 0, "recipients": []}
        if not self.configured:
            logger.info(
                "email_channel_placeholder_send",
                extra={
                    "subject": message.subject,
                    "recipients": recipients,
                },
            )
            return {"mode": "not_configured", "sent": 0, "recipients": recipients}

        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = ", ".join(recipients)
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(email_message)
        return {"mode": "sent", "sent": len(recipients), "recipients": recipients}

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.smtp_host:
            missing_fields.append("SMTP_HOST")
        if not self.smtp_from:
            missing_fields.append("SMTP_FROM")
        return {
            "enabled": bool(self.enabled),
            "configured": self.configured,
            "smtp_host_set": bool(self.smtp_host),
            "smtp_from_set": bool(self.smtp_from),
            "smtp_use_tls": bool(self.smtp_use_tls),
            "missing_fields": missing_fields,
        }


def format_date_br(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def build_missing_entry_message(alert: MissingEntryAlert) -> NotificationMessage:
    subject = f"Lançamento Diário Pendente - {alert.unit_name} ({alert.date})"
    body = "\n".join(
        [
            f"Olá {alert.user_name},",
            "",
            f"O lançamento diário da unidade {alert.unit_name} referente a {alert.date} ainda não foi registrado.",
            "",
            "Acesse o formulário para registrar o lançamento:",
            alert.entry_form_link,
            "",
            "Se o lançamento já foi feito, desconsidere esta mensagem.",
        ]
    )
    return NotificationMessage(recipients=[alert.user_email], subject=subject, body=body)


def _deliver(channel: NotificationChannel, message: NotificationMessage) -> None:
    recipient = message.recipients[0] if message.recipients else "-"
    try:
        result = channel.send(message)
    except Exception as exc:
        raise DispatchError(recipient, f"{exc.__class__.__name__}: {exc}"[:500]) from exc
    if int(result.get("sent") or 0) <= 0:
        raise DispatchError(recipient, str(result.get("error") or result.get("mode") or "EMAIL_NOT_SENT"))


def send_missing_entry_alert(channel: NotificationChannel, alert: MissingEntryAlert) -> DispatchResult:
    message = build_missing_entry_message(alert)
    try:
        _deliver(channel, message)
    except DispatchError as exc:
        logger.exception(
            "missing_entry_alert_failed",
            extra={
                "recipient": exc.recipient,
                "subject": message.subject,
                "reason": exc.reason,
            },
        )
        return DispatchResult(ok=False, recipient=alert.user_email, reason=exc.reason)
    return DispatchResult(ok=True, recipient=alert.user_email)


def get_notification_channel_health() -> dict[str, Any]:
    return {"email": EmailChannel().config_status()}


def get_notification_channel() -> NotificationChannel:
    return EmailChannel()
