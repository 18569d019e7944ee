"""Models package for database models."""

from app.models.user import User
from app.models.donation import Donation
from app.models.donation_event import DonationEvent

__all__ = [
    "User",
    "Donation",
    "DonationEvent",
]
