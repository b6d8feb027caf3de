"""Outbound account e-mails (verification and password reset).

Messages are rendered as HTML and either handed to an SMTP server or, with
``EMAIL_BACKEND=console``, only logged. Sending never raises: callers get an
``EmailResult`` and decide how to report a failure.
"""
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from html import escape
from typing import Optional
from urllib.parse import quote

from reelgram.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


_TEMPLATE = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #333;">{heading}</h2>
  <p>{intro}</p>
  <div style="text-align: center; margin: 30px 0;">
    <a href="{url}" style="background-color: {color}; color: white; padding: 12px 24px; text-decoration: none; border-radius: 5px; display: inline-block;">{button}</a>
  </div>
  <p style="color: #666;">If the button doesn't work, you can copy and paste this link into your browser:</p>
  <p style="word-break: break-all; color: {color};">{url}</p>
  <hr style="margin: 30px 0; border: none; border-top: 1px solid #eee;">
  <p style="color: #999; font-size: 12px;">{footer}</p>
</div>
"""


def verification_url(token: str) -> str:
    return f"{settings.BASE_URL}/api/auth/verify-email?token={quote(token)}"


def render_verification_email(username: str, token: str) -> str:
    return _TEMPLATE.format(
        heading=f"Welcome to Reelgram, {escape(username)}!",
        intro="Thank you for registering with Reelgram. To complete your registration, "
              "please verify your email address by clicking the button below:",
        url=verification_url(token),
        color="#007bff",
        button="Verify Email Address",
        footer=f"This verification link will expire in {settings.VERIFICATION_TTL_HOURS} hours. "
               "If you didn't create this account, please ignore this email.",
    )


def render_password_reset_email(username: str, token: str) -> str:
    return _TEMPLATE.format(
        heading="Password Reset Request",
        intro=f"Hi {escape(username)}, you requested to reset your password for your Reelgram "
              "account. Click the button below to reset it:",
        url=f"{settings.FRONTEND_URL}/reset-password?token={quote(token)}",
        color="#dc3545",
        button="Reset Password",
        footer="This reset link will expire in 1 hour. If you didn't request this, please ignore this email.",
    )


def send_email(to: str, subject: str, html: str) -> EmailResult:
    msg = EmailMessage()
    msg["From"] = settings.EMAIL_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain="reelgram.local")
    msg.set_content("This message requires an HTML capable mail client.")
    msg.add_alternative(html, subtype="html")

    if settings.EMAIL_BACKEND == "console":
        logger.info(f"📧 [console] {subject} -> {to}\n{html}")
        return EmailResult(success=True, message_id=msg["Message-ID"])

    try:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
            if settings.SMTP_STARTTLS:
                smtp.starttls()
            if settings.SMTP_USER and settings.SMTP_PASSWORD:
                smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"❌ Error sending '{subject}' to {to}: {e}")
        return EmailResult(success=False, error=str(e))

    logger.info(f"📧 {subject} sent to {to}")
    return EmailResult(success=True, message_id=msg["Message-ID"])


def send_verification_email(email: str, username: str, token: str) -> EmailResult:
    return send_email(email, "Verify your Reelgram account", render_verification_email(username, token))


def send_password_reset_email(email: str, username: str, token: str) -> EmailResult:
    return send_email(email, "Reset your Reelgram password", render_password_reset_email(username, token))
