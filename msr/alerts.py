from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import settings


def _smtp_configured() -> bool:
    return settings.enable_email and all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    )


def format_alert(machine: str, service: str, headline: str, detail: str) -> tuple[str, str]:
    subject = f"[MSR] {headline}: {service} on {machine}"
    # Remote output can be long; the full text is in the events table.
    if len(detail) > 4000:
        detail = detail[:4000] + "\n...(truncated)"
    body = f"Machine: {machine}\nService: {service}\nEvent: {headline}\n\n{detail}"
    return subject, body


def send_alert(machine: str, service: str, headline: str, detail: str) -> bool:
    """Email a service alert if SMTP settings are configured.

    Environment variables:
      - MSR_ENABLE_EMAIL=true
      - MSR_SMTP_HOST / MSR_SMTP_PORT
      - MSR_SMTP_USER / MSR_SMTP_PASSWORD
      - MSR_EMAIL_FROM / MSR_EMAIL_TO
    """
    if not _smtp_configured():
        return False

    subject, body = format_alert(machine, service, headline, detail)
    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain", "utf-8"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30)
        try:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        finally:
            server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False
