"""
Assignment & Deadline Validator.

A Commitment is the pickup/delivery deadline pair a volunteer agrees to at
assignment time. It can only be built through validate_commitment, so every
persisted pair satisfies pickup < delivery <= expiry.
"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from app.fsm.clock import as_utc
from app.fsm.errors import ValidationError

DeadlineInput = Union[datetime, str, None]


class Commitment(BaseModel):
    """Validated pickup/delivery deadline pair."""

    model_config = ConfigDict(frozen=True)

    pickup_deadline: datetime
    delivery_deadline: datetime


def parse_deadline(value: DeadlineInput, label: str) -> datetime:
    """Parse an ISO-8601 string or datetime into aware UTC."""
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        # fromisoformat on older interpreters rejects a trailing Z
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        return as_utc(datetime.fromisoformat(text))
    except (AttributeError, TypeError, ValueError):
        raise ValidationError(f"Invalid {label} deadline", code="invalid_deadline")


def validate_commitment(
    pickup_deadline: DeadlineInput,
    delivery_deadline: DeadlineInput,
    expiry_date: Optional[datetime],
) -> Commitment:
    """
    Validate deadlines against each other and the donation's expiry.

    Each violated constraint has its own message so the volunteer can see
    which one failed.
    """
    if not pickup_deadline or not delivery_deadline:
        raise ValidationError(
            "Pickup and delivery deadlines are required",
            code="deadlines_required",
        )

    pickup = parse_deadline(pickup_deadline, "pickup")
    delivery = parse_deadline(delivery_deadline, "delivery")

    if pickup >= delivery:
        raise ValidationError(
            "Pickup time must be before delivery time",
            code="pickup_after_delivery",
        )

    expiry = as_utc(expiry_date)
    if expiry is not None and delivery > expiry:
        raise ValidationError(
            "Delivery time cannot exceed expiry date",
            code="delivery_after_expiry",
        )

    return Commitment(pickup_deadline=pickup, delivery_deadline=delivery)
