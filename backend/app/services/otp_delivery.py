from __future__ import annotations

from app.core.config import get_settings
from app.services.email import send_email

_SUBJECTS = {
    "signup": "Confirm your TransFund account",
    "signin": "Your TransFund sign-in code",
}

# Delivery failures reported by the email service, mapped to what the caller can act on.
DELIVERY_ERROR_DETAILS = {
    "SMTP is not configured": "Email service not configured. Set SMTP settings in backend/.env and restart backend.",
    "SMTP authentication failed": "Email authentication failed. Verify SMTP username/password (or app password) and try again.",
    "SMTP connection failed": "Cannot connect to SMTP server. Verify SMTP host/port and TLS/SSL settings.",
    "SMTP sender rate limited": "Email sending limit reached for the configured SMTP account. Try again later.",
    "SMTP recipient rejected": "Recipient email was rejected by the SMTP provider.",
    "SMTP sender rejected": "Sender email was rejected by the SMTP provider. Verify SMTP_FROM_EMAIL.",
}
DEFAULT_DELIVERY_ERROR_DETAIL = "Unable to send verification email. Please try again later."


def delivery_error_detail(reason: str) -> str:
    return DELIVERY_ERROR_DETAILS.get(reason, DEFAULT_DELIVERY_ERROR_DETAIL)


def deliver_otp(*, identity: str, code: str, purpose: str) -> None:
    """Email ``code`` to ``identity``; raises ``EmailDeliveryError`` on failure."""
    expire_minutes = get_settings().otp_expire_minutes
    text_content = (
        "Hello,\n\n"
        f"Your TransFund verification code is: {code}\n"
        f"This code will expire in {expire_minutes} minutes.\n\n"
        "If you did not request this, please ignore this email."
    )
    html_content = (
        '<div style="font-family:Arial,sans-serif">'
        "<p>Your TransFund verification code is:</p>"
        f'<div style="font-size:28px;font-weight:700;letter-spacing:2px">{code}</div>'
        f"<p>This code will expire in {expire_minutes} minutes.</p>"
        "</div>"
    )
    send_email(
        to_email=identity,
        subject=_SUBJECTS.get(purpose, _SUBJECTS["signin"]),
        text_content=text_content,
        html_content=html_content,
    )
