from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Protocol

import httpx

from . import db
from .settings import settings


class Notifier(Protocol):
    def notify(self, service: str, final_phase: str, summary: dict[str, Any]) -> None: ...


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - PDC_ENABLE_EMAIL=true
      - PDC_SMTP_HOST / PDC_SMTP_PORT
      - PDC_SMTP_USER / PDC_SMTP_PASSWORD
      - PDC_EMAIL_FROM / PDC_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
    try:
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
    finally:
        server.quit()
    return True


def _subject(service: str, final_phase: str, summary: dict[str, Any]) -> str:
    icon = {"Succeeded": "PROMOTED", "RolledBack": "ROLLED BACK", "Failed": "FAILED"}.get(final_phase, final_phase)
    degraded = " (degraded)" if summary.get("degraded") else ""
    return f"{icon}{degraded}: {service} rollout {summary.get('rollout_id', '?')}"


def _body(service: str, final_phase: str, summary: dict[str, Any]) -> str:
    lines = [f"Service: {service}", f"Final phase: {final_phase}"]
    for key, value in summary.items():
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


class EventLogNotifier:
    """Records the terminal outcome in the event log."""

    def notify(self, service: str, final_phase: str, summary: dict[str, Any]) -> None:
        level = "INFO" if final_phase == "Succeeded" and not summary.get("degraded") else "WARN"
        if final_phase == "Failed":
            level = "ERROR"
        db.log_event(
            level,
            _subject(service, final_phase, summary),
            service_name=service,
            rollout_id=summary.get("rollout_id"),
        )


class EmailNotifier:
    def notify(self, service: str, final_phase: str, summary: dict[str, Any]) -> None:
        send_email(_subject(service, final_phase, summary), _body(service, final_phase, summary))


class WebhookNotifier:
    """POSTs the summary as JSON, e.g. to a chat incoming-webhook relay."""

    def __init__(self, url: str, timeout_s: float = 5.0, client: httpx.Client | None = None):
        self.url = url
        self.timeout_s = timeout_s
        self._client = client

    def notify(self, service: str, final_phase: str, summary: dict[str, Any]) -> None:
        payload = {
            "service": service,
            "final_phase": final_phase,
            "summary": summary,
            "text": _subject(service, final_phase, summary),
        }
        if self._client is not None:
            resp = self._client.post(self.url, json=payload, timeout=self.timeout_s)
        else:
            with httpx.Client(timeout=self.timeout_s) as client:
                resp = client.post(self.url, json=payload)
        resp.raise_for_status()


class MultiNotifier:
    """Fans a notification out; one failing channel does not stop the others."""

    def __init__(self, *notifiers: Notifier):
        self.notifiers = list(notifiers)

    def notify(self, service: str, final_phase: str, summary: dict[str, Any]) -> None:
        errors: list[str] = []
        for n in self.notifiers:
            try:
                n.notify(service, final_phase, summary)
            except Exception as e:
                errors.append(f"{type(n).__name__}: {type(e).__name__}: {e}")
        if errors:
            raise RuntimeError("; ".join(errors))


def build_notifier() -> Notifier:
    notifiers: list[Notifier] = [EventLogNotifier()]
    if settings.enable_email:
        notifiers.append(EmailNotifier())
    if settings.webhook_url:
        notifiers.append(WebhookNotifier(settings.webhook_url))
    return MultiNotifier(*notifiers)
