from __future__ import annotations

from email.message import EmailMessage
import logging
import smtplib
import ssl
import time

from app.core.config import get_settings

logger = logging.getLogger(__name__)


_CONNECTION_ERRORS = (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected, smtplib.SMTPHeloError)


class EmailDeliveryError(RuntimeError):
    pass


def _classify_smtp_data_error(exc: smtplib.SMTPDataError) -> str:
    smtp_error = exc.smtp_error
    if isinstance(smtp_error, bytes):
        message = smtp_error.decode("utf-8", errors="ignore").lower()
    else:
        message = str(smtp_error).lower()

    if "sending limit" in message or "quota" in message or "rate limit" in message or "too many messages" in message:
        return "SMTP sender rate limited"
    if "recipient address rejected" in message or "recipient rejected" in message:
        return "SMTP recipient rejected"
    if "sender address rejected" in message or "sender rejected" in message:
        return "SMTP sender rejected"
    return "SMTP data rejected"


def _resolve_smtp_password(host: str, raw_password: str | None) -> str:
    password = raw_password or ""
    if host.lower() == "smtp.gmail.com":
        # Gmail app-passwords are often copied with spaces.
        return "".join(password.split())
    return password


def _build_message(*, settings, to_email: str, subject: str, text_content: str, html_content: str | None) -> EmailMessage:
    message = EmailMessage()
    if settings.smtp_from_name:
        message["From"] = f"{settings.smtp_from_name} <{settings.smtp_from_email}>"
    else:
        message["From"] = settings.smtp_from_email
    message["To"] = to_email
    message["Subject"] = subject
    message.set_content(text_content)
    if html_content:
        message.add_alternative(html_content, subtype="html")
    return message


def _deliver(settings, message: EmailMessage, timeout: int) -> None:
    password = _resolve_smtp_password(settings.smtp_host, settings.smtp_password)
    if settings.smtp_use_ssl:
        with smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=timeout) as smtp:
            if settings.smtp_username:
                smtp.login(settings.smtp_username, password)
            smtp.send_message(message)
        return

    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=timeout) as smtp:
        if settings.smtp_use_tls:
            smtp.starttls(context=ssl.create_default_context())
        if settings.smtp_username:
            smtp.login(settings.smtp_username, password)
        smtp.send_message(message)


def smtp_configured(settings=None) -> bool:
    settings = settings or get_settings()
    return bool(settings.smtp_host and settings.smtp_from_email)


def send_email(*, to_email: str, subject: str, text_content: str, html_content: str | None = None) -> None:
    """Send one message through the configured SMTP relay.

    Dropped connections are retried with linear backoff. Authentication and
    rejection errors fail immediately. Every failure surfaces as an
    ``EmailDeliveryError`` whose message names the failure class.
    """
    settings = get_settings()
    if not smtp_configured(settings):
        raise EmailDeliveryError("SMTP is not configured")

    timeout = max(1, settings.smtp_timeout_seconds)
    retry_attempts = max(1, settings.smtp_retry_attempts)
    retry_backoff_seconds = max(0.0, settings.smtp_retry_backoff_seconds)
    message = _build_message(
        settings=settings,
        to_email=to_email,
        subject=subject,
        text_content=text_content,
        html_content=html_content,
    )

    last_error: Exception | None = None
    last_error_message = "Unable to deliver email"
    for attempt in range(1, retry_attempts + 1):
        try:
            _deliver(settings, message, timeout)
            return
        except smtplib.SMTPAuthenticationError as exc:
            last_error, last_error_message = exc, "SMTP authentication failed"
            break
        except smtplib.SMTPDataError as exc:
            last_error, last_error_message = exc, _classify_smtp_data_error(exc)
            break
        except smtplib.SMTPRecipientsRefused as exc:
            last_error, last_error_message = exc, "SMTP recipient rejected"
            break
        except smtplib.SMTPSenderRefused as exc:
            last_error, last_error_message = exc, "SMTP sender rejected"
            break
        except OSError as exc:
            # smtplib errors subclass OSError; only transport drops are retried.
            if isinstance(exc, smtplib.SMTPException) and not isinstance(exc, _CONNECTION_ERRORS):
                last_error, last_error_message = exc, "Unable to deliver email"
                break
            last_error, last_error_message = exc, "SMTP connection failed"
            logger.warning("SMTP attempt %s/%s to %s failed", attempt, retry_attempts, settings.smtp_host)
            if attempt < retry_attempts and retry_backoff_seconds > 0:
                time.sleep(retry_backoff_seconds * attempt)

    raise EmailDeliveryError(last_error_message) from last_error
