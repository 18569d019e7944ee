"""
Email Service - OTP delivery to donors and recipients.

The lifecycle talks to an EmailDispatcher, which only enqueues. The SMTP
conversation happens inside the Celery worker so a slow or broken mail
server never holds up a transition.
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol

from app.config import settings
from app.fsm.states import OtpStage

logger = logging.getLogger(__name__)


class EmailDispatcher(Protocol):
    """Anything that can hand an OTP code off for email delivery."""

    async def send_otp_email(self, address: str, code: str, stage: OtpStage) -> None:
        ...


class CeleryEmailDispatcher:
    """Queue OTP email on the Celery worker."""

    async def send_otp_email(self, address: str, code: str, stage: OtpStage) -> None:
        from app.workers.otp_email import deliver_otp_email

        # Broker publish is blocking I/O
        await asyncio.to_thread(deliver_otp_email.delay, address, code, stage.value)
        logger.info(f"Queued {stage.value} OTP email to {address}")


def build_otp_message(
    address: str, code: str, stage: OtpStage, sender: Optional[str] = None
) -> EmailMessage:
    """Compose the OTP email."""
    subject = f"Food {stage.display_name} OTP"
    action = "pickup your food" if stage == OtpStage.PICKUP else "deliver your food"
    minutes = max(settings.otp_ttl_seconds // 60, 1)

    message = EmailMessage()
    message["Subject"] = subject
    sender = sender or settings.smtp_from_email or settings.smtp_user
    if sender:
        message["From"] = sender
    message["To"] = address
    message.set_content(
        "\n".join(
            [
                "Hello,",
                "",
                f"A volunteer has arrived to {action}.",
                f"Your OTP is: {code}",
                f"This OTP is valid for {minutes} minutes.",
                "Please share this code with the volunteer only when you are ready.",
                "",
                f"- {settings.app_name}",
            ]
        )
    )
    message.add_alternative(
        f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <h2 style="text-align: center;">{subject}</h2>
            <p style="text-align: center;">A volunteer has arrived to {action}.</p>
            <h1 style="text-align: center; letter-spacing: 5px;">{code}</h1>
            <p style="text-align: center; font-size: 12px;">This OTP is valid for {minutes} minutes.</p>
        </div>
        """,
        subtype="html",
    )
    return message


class SmtpEmailService:
    """Blocking SMTP sender, run inside the Celery worker."""

    def __init__(self):
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.username = settings.smtp_user
        self.password = settings.smtp_password
        self.use_tls = settings.smtp_use_tls

    @property
    def is_configured(self) -> bool:
        return bool(self.host and (settings.smtp_from_email or self.username))

    def send_otp_email(self, address: str, code: str, stage: OtpStage) -> bool:
        """
        Send the OTP email.

        Returns False when SMTP is not configured (development logs the code
        instead). Raises on SMTP failure so the task can retry.
        """
        if not self.is_configured:
            logger.warning(
                f"SMTP not configured. Logging OTP for dev: to={address} stage={stage.value} otp={code}"
            )
            return False

        message = build_otp_message(
            address, code, stage, sender=settings.smtp_from_email or self.username
        )
        with smtplib.SMTP(self.host, self.port, timeout=15) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)

        logger.info(f"OTP email sent to {address} ({stage.value})")
        return True
