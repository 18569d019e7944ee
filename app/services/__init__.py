"""Services package."""

from app.services.user_service import UserService
from app.services.donation_repository import DonationRepository
from app.services.notification_service import NotificationPublisher, RedisNotificationPublisher
from app.services.email_service import EmailDispatcher, CeleryEmailDispatcher, SmtpEmailService

__all__ = [
    "UserService",
    "DonationRepository",
    "NotificationPublisher",
    "RedisNotificationPublisher",
    "EmailDispatcher",
    "CeleryEmailDispatcher",
    "SmtpEmailService",
]
