"""Donation model - the record the lifecycle state machine drives."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, DateTime, Boolean, Float, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.fsm.clock import as_utc
from app.fsm.commitment import Commitment
from app.fsm.otp import OtpState
from app.fsm.states import DonationStatus, OtpStage


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Donation(Base):
    """
    Surplus food posted by a donor and carried through
    posted -> requested -> assigned -> picked -> delivered -> completed.

    Actor ids reference identities issued upstream and are not
    foreign keys; the users table is only a contact directory.

    The commitment and both OTP sub-objects are flattened into columns so the
    store can guard conditional writes on them; the commitment / pickup_otp /
    delivery_otp properties expose them as value objects.
    """

    __tablename__ = "donations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    donor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )

    # Food description, e.g. "Veg biryani"
    food_type: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Free text, e.g. "5 meals"
    quantity: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    image_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    expiry_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    # Pickup point
    pickup_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=DonationStatus.POSTED.value,
        nullable=False,
        index=True,
    )

    recipient_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )

    volunteer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )

    # Drop-off point, set at request time
    recipient_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    recipient_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    recipient_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Volunteer commitment, set once at assignment
    pickup_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Pickup OTP (sent to donor)
    pickup_otp_code: Mapped[Optional[str]] = mapped_column(String(6), nullable=True)
    pickup_otp_generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pickup_otp_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pickup_otp_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Delivery OTP (sent to recipient)
    delivery_otp_code: Mapped[Optional[str]] = mapped_column(String(6), nullable=True)
    delivery_otp_generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_otp_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_otp_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Stage timestamps
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    picked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        index=True,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Donation {self.id} {self.food_type} {self.status}>"

    @property
    def lifecycle_status(self) -> DonationStatus:
        return DonationStatus(self.status)

    @property
    def commitment(self) -> Optional[Commitment]:
        if self.pickup_deadline is None or self.delivery_deadline is None:
            return None
        return Commitment(
            pickup_deadline=as_utc(self.pickup_deadline),
            delivery_deadline=as_utc(self.delivery_deadline),
        )

    @property
    def pickup_otp(self) -> OtpState:
        return self.otp_for(OtpStage.PICKUP)

    @property
    def delivery_otp(self) -> OtpState:
        return self.otp_for(OtpStage.DELIVERY)

    def otp_for(self, stage: OtpStage) -> OtpState:
        prefix = f"{stage.value}_otp"
        return OtpState(
            code=getattr(self, f"{prefix}_code"),
            generated_at=as_utc(getattr(self, f"{prefix}_generated_at")),
            expires_at=as_utc(getattr(self, f"{prefix}_expires_at")),
            verified=bool(getattr(self, f"{prefix}_verified")),
        )

    @property
    def has_recipient_location(self) -> bool:
        return self.recipient_latitude is not None and self.recipient_longitude is not None


def otp_columns(stage: OtpStage, state: OtpState) -> dict:
    """Column values for writing an OTP state onto a donation."""
    prefix = f"{stage.value}_otp"
    return {
        f"{prefix}_code": state.code,
        f"{prefix}_generated_at": state.generated_at,
        f"{prefix}_expires_at": state.expires_at,
        f"{prefix}_verified": state.verified,
    }
