"""SMTP delivery for billing notifications."""
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from telebill.core.config import settings


class EmailSendError(RuntimeError):
    pass


def build_message(to_email: str, subject: str, body: str, kind: str | None = None) -> EmailMessage:
    if not settings.SMTP_FROM_EMAIL:
        raise EmailSendError("SMTP_FROM_EMAIL is not configured")

    msg = EmailMessage()
    msg["From"] = formataddr((settings.SMTP_FROM_NAME or "", settings.SMTP_FROM_EMAIL))
    msg["To"] = to_email
    msg["Subject"] = f"[{settings.PROJECT_NAME}] {subject}"
    msg["Message-ID"] = make_msgid(domain=settings.SMTP_FROM_EMAIL.rpartition("@")[2] or None)
    if settings.SMTP_REPLY_TO:
        msg["Reply-To"] = settings.SMTP_REPLY_TO
    if kind:
        # Lets support tooling filter billing mail by type
        msg["X-Billing-Notification"] = kind
    msg.set_content(body)
    return msg


def send_email(to_email: str, subject: str, body: str, kind: str | None = None) -> None:
    if not settings.SMTP_HOST:
        raise EmailSendError("SMTP is not configured")

    msg = build_message(to_email, subject, body, kind=kind)

    try:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=20) as server:
            server.ehlo()
            if settings.SMTP_USE_TLS:
                server.starttls()
                server.ehlo()
            if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
                server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise EmailSendError(str(e)) from e
