"""
OTP Email Worker.
Delivers pickup/delivery codes over SMTP off the request path.
"""

import logging
import smtplib

from app.workers.celery_app import celery_app
from app.fsm.states import OtpStage
from app.services.email_service import SmtpEmailService

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def deliver_otp_email(self, address: str, code: str, stage: str):
    """
    Send an OTP email.

    Args:
        address: Donor (pickup) or recipient (delivery) email
        code: 6-digit code
        stage: "pickup" or "delivery"
    """
    try:
        sent = SmtpEmailService().send_otp_email(address, code, OtpStage(stage))
        return {"sent": sent}
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"OTP email to {address} failed: {e}", exc_info=True)
        # Codes live for minutes, so retry quickly
        raise self.retry(exc=e, countdown=5 * (2 ** self.request.retries))
