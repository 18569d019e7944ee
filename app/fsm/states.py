"""
FSM State Definitions.
Donation statuses, actor roles, OTP stages and the lifecycle transition table.
"""

from enum import Enum
from typing import Dict, FrozenSet


class Role(str, Enum):
    """Actor roles supplied by the identity context."""

    DONOR = "donor"
    VOLUNTEER = "volunteer"
    RECIPIENT = "recipient"
    ADMIN = "admin"


class DonationStatus(str, Enum):
    """
    All possible donation statuses.
    Forward-only: posted -> requested -> assigned -> picked -> delivered -> completed,
    with posted|requested -> expired as the time-triggered side branch.
    """

    POSTED = "posted"
    REQUESTED = "requested"
    ASSIGNED = "assigned"
    PICKED = "picked"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    EXPIRED = "expired"


class OtpStage(str, Enum):
    """
    The two custody handoffs proven by a one-time passcode.
    Request payloads use these values.
    """

    PICKUP = "pickup"
    DELIVERY = "delivery"

    @property
    def required_status(self) -> DonationStatus:
        """Status the donation must be in to generate or verify this stage's code."""
        mapping = {
            OtpStage.PICKUP: DonationStatus.ASSIGNED,
            OtpStage.DELIVERY: DonationStatus.PICKED,
        }
        return mapping[self]

    @property
    def target_status(self) -> DonationStatus:
        """Status the donation advances to once this stage's code is verified."""
        mapping = {
            OtpStage.PICKUP: DonationStatus.PICKED,
            OtpStage.DELIVERY: DonationStatus.DELIVERED,
        }
        return mapping[self]

    @property
    def event(self) -> "LifecycleEvent":
        mapping = {
            OtpStage.PICKUP: LifecycleEvent.PICKUP_OTP_GENERATED,
            OtpStage.DELIVERY: LifecycleEvent.DELIVERY_OTP_GENERATED,
        }
        return mapping[self]

    @property
    def display_name(self) -> str:
        names = {
            OtpStage.PICKUP: "Pickup",
            OtpStage.DELIVERY: "Delivery",
        }
        return names[self]

    @classmethod
    def for_target(cls, status: DonationStatus) -> "OtpStage":
        """Map an advance target (picked/delivered) to the stage that gates it."""
        for stage in cls:
            if stage.target_status == status:
                return stage
        raise KeyError(status)


class LifecycleEvent(str, Enum):
    """Event names published to the notification channel."""

    DONATION_CREATED = "donationCreated"
    DONATION_UPDATED = "donationUpdated"
    PICKUP_OTP_GENERATED = "pickupOtpGenerated"
    DELIVERY_OTP_GENERATED = "deliveryOtpGenerated"


# Legal forward transitions
ALLOWED_TRANSITIONS: Dict[DonationStatus, FrozenSet[DonationStatus]] = {
    DonationStatus.POSTED: frozenset(
        {DonationStatus.REQUESTED, DonationStatus.ASSIGNED, DonationStatus.EXPIRED}
    ),
    DonationStatus.REQUESTED: frozenset(
        {DonationStatus.ASSIGNED, DonationStatus.EXPIRED}
    ),
    DonationStatus.ASSIGNED: frozenset({DonationStatus.PICKED}),
    DonationStatus.PICKED: frozenset({DonationStatus.DELIVERED}),
    DonationStatus.DELIVERED: frozenset({DonationStatus.COMPLETED}),
    DonationStatus.COMPLETED: frozenset(),
    DonationStatus.EXPIRED: frozenset(),
}


def can_transition(current: DonationStatus, target: DonationStatus) -> bool:
    """Check the transition table."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def sources_of(target: DonationStatus) -> FrozenSet[DonationStatus]:
    """Statuses the table allows to move into `target`."""
    return frozenset(s for s in ALLOWED_TRANSITIONS if can_transition(s, target))


# Statuses a volunteer may claim from
ASSIGNABLE_STATUSES: FrozenSet[DonationStatus] = sources_of(DonationStatus.ASSIGNED)

# Statuses the sweep may expire
EXPIRABLE_STATUSES: FrozenSet[DonationStatus] = sources_of(DonationStatus.EXPIRED)

# Statuses in which the recipient / volunteer reference must be set
RECIPIENT_BOUND_STATUSES: FrozenSet[DonationStatus] = frozenset(
    {
        DonationStatus.REQUESTED,
        DonationStatus.ASSIGNED,
        DonationStatus.PICKED,
        DonationStatus.DELIVERED,
        DonationStatus.COMPLETED,
    }
)
VOLUNTEER_BOUND_STATUSES: FrozenSet[DonationStatus] = frozenset(
    {
        DonationStatus.ASSIGNED,
        DonationStatus.PICKED,
        DonationStatus.DELIVERED,
        DonationStatus.COMPLETED,
    }
)
