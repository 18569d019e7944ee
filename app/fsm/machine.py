"""
FSM Machine - Donation lifecycle state machine with OTP-gated transitions.

Every command follows the same order: role check, load, actor binding,
status precondition, record-dependent argument checks, then one conditional
write. The event history row is written in the same transaction; the
notification and OTP email go out only after the commit and can never fail
the transition.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.fsm.actor import Actor
from app.fsm.clock import Clock, as_utc, utcnow
from app.fsm.commitment import DeadlineInput, validate_commitment
from app.fsm.errors import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from app.fsm.otp import OtpState, new_otp, verify_otp
from app.fsm.states import (
    ASSIGNABLE_STATUSES,
    EXPIRABLE_STATUSES,
    DonationStatus,
    LifecycleEvent,
    OtpStage,
    Role,
    can_transition,
)
from app.models.donation import Donation, otp_columns
from app.services.donation_repository import DonationRepository
from app.services.email_service import EmailDispatcher
from app.services.notification_service import NotificationPublisher
from app.services.user_service import UserService
from app.utils.geo import GeoPoint, validate_coordinates

logger = logging.getLogger(__name__)

SYSTEM_ROLE = "system"


class DonationLifecycle:
    """
    Authoritative set of donation transitions.

    One instance per unit of work; holds no state between requests beyond
    its collaborators.
    """

    def __init__(
        self,
        db: AsyncSession,
        publisher: NotificationPublisher,
        email_dispatcher: EmailDispatcher,
        clock: Clock = utcnow,
        otp_ttl_seconds: Optional[int] = None,
        notification_timeout: Optional[float] = None,
        allow_assign_without_request: Optional[bool] = None,
    ):
        self.db = db
        self.repo = DonationRepository(db)
        self.user_service = UserService(db)
        self.publisher = publisher
        self.email_dispatcher = email_dispatcher
        self.clock = clock
        self.otp_ttl_seconds = otp_ttl_seconds or settings.otp_ttl_seconds
        self.notification_timeout = notification_timeout or settings.notification_timeout_seconds
        self.allow_assign_without_request = (
            settings.allow_assign_without_request
            if allow_assign_without_request is None
            else allow_assign_without_request
        )

    def now(self) -> datetime:
        return as_utc(self.clock())

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_donation(
        self,
        actor: Actor,
        food_type: str,
        quantity: str,
        expiry_date: Union[datetime, str],
        latitude: Optional[float],
        longitude: Optional[float],
        address: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Donation:
        """Donor posts surplus food. Status starts at posted."""
        self._require_role(actor, Role.DONOR, "Only donors can post donations")

        if not food_type or not food_type.strip():
            raise ValidationError("Food type is required", code="food_type_required")
        if not quantity or not str(quantity).strip():
            raise ValidationError("Quantity is required", code="quantity_required")
        if latitude is None or longitude is None:
            raise ValidationError("Pickup location is required", code="location_required")
        if not validate_coordinates(latitude, longitude):
            raise ValidationError("Pickup location is out of range", code="invalid_location")

        now = self.now()
        expiry = self._parse_expiry(expiry_date)
        if expiry <= now:
            raise ValidationError("Expiry date must be in the future", code="expiry_in_past")

        donation = Donation(
            donor_id=actor.id,
            food_type=food_type.strip(),
            quantity=str(quantity).strip(),
            expiry_date=expiry,
            pickup_latitude=latitude,
            pickup_longitude=longitude,
            pickup_address=address,
            image_url=image_url,
            status=DonationStatus.POSTED.value,
            created_at=now,
            updated_at=now,
        )
        await self.repo.add(donation)
        await self.repo.record_event(
            donation,
            LifecycleEvent.DONATION_CREATED.value,
            None,
            actor_id=actor.id,
            actor_role=actor.role.value,
        )
        await self.db.commit()

        logger.info(f"Donation {donation.id} posted by donor {actor.id}")
        await self._publish(
            LifecycleEvent.DONATION_CREATED,
            self._payload(
                donation,
                donorId=str(donation.donor_id),
                quantity=donation.quantity,
                expiryDate=as_utc(donation.expiry_date).isoformat(),
            ),
        )
        return donation

    async def request_donation(
        self,
        actor: Actor,
        donation_id: uuid.UUID,
        recipient_location: Optional[GeoPoint] = None,
        address: Optional[str] = None,
    ) -> Donation:
        """Recipient claims a posted donation, optionally giving a drop-off point."""
        self._require_role(actor, Role.RECIPIENT, "Only recipients can request donations")
        donation = await self._load(donation_id)

        if not can_transition(donation.lifecycle_status, DonationStatus.REQUESTED):
            raise InvalidStateError("Donation is not available", code="not_available")

        now = self.now()
        if as_utc(donation.expiry_date) <= now:
            raise InvalidStateError("Donation has expired", code="donation_expired")

        values: Dict[str, Any] = {
            "status": DonationStatus.REQUESTED,
            "recipient_id": actor.id,
        }
        if recipient_location is not None:
            if not validate_coordinates(recipient_location.latitude, recipient_location.longitude):
                raise ValidationError("Recipient location is out of range", code="invalid_location")
            values.update(
                recipient_latitude=recipient_location.latitude,
                recipient_longitude=recipient_location.longitude,
                recipient_address=address or "Recipient Location",
            )

        updated = await self.repo.conditional_update(
            donation.id,
            DonationStatus.POSTED,
            values,
            conditions=[Donation.expiry_date > now],
            recipient_id=None,
        )
        if updated is None:
            await self.db.rollback()
            raise ConflictError("Donation has already been requested")

        return await self._accept(
            updated,
            DonationStatus.POSTED,
            actor,
            recipientId=str(actor.id),
        )

    async def assign_donation(
        self,
        actor: Actor,
        donation_id: uuid.UUID,
        pickup_deadline: DeadlineInput,
        delivery_deadline: DeadlineInput,
    ) -> Donation:
        """
        Volunteer commits to pickup and delivery deadlines.

        Repeating the call as the same volunteer is a no-op success. Losing the
        claim to another volunteer is a ConflictError.
        """
        self._require_role(actor, Role.VOLUNTEER, "Only volunteers can accept donations")
        # Shape checks that need no record: presence, parsing, ordering
        validate_commitment(pickup_deadline, delivery_deadline, None)

        donation = await self._load(donation_id)
        status = donation.lifecycle_status

        if status == DonationStatus.ASSIGNED and donation.volunteer_id == actor.id:
            logger.info(f"Donation {donation.id} already assigned to volunteer {actor.id}")
            return donation

        allowed = self._assignable_statuses()
        if status not in allowed:
            if donation.volunteer_id not in (None, actor.id):
                raise ConflictError(
                    "Donation has already been taken by another volunteer",
                    code="already_taken",
                )
            expected = " or ".join(f"'{s.value}'" for s in sorted(allowed, key=lambda s: s.value))
            raise InvalidStateError(
                f"Donation status is '{status.value}', expected {expected}"
            )

        commitment = validate_commitment(
            pickup_deadline, delivery_deadline, donation.expiry_date
        )

        now = self.now()
        values: Dict[str, Any] = {
            "status": DonationStatus.ASSIGNED,
            "volunteer_id": actor.id,
            "assigned_at": now,
            "pickup_deadline": commitment.pickup_deadline,
            "delivery_deadline": commitment.delivery_deadline,
        }
        values.update(otp_columns(OtpStage.PICKUP, OtpState.empty()))
        values.update(otp_columns(OtpStage.DELIVERY, OtpState.empty()))

        updated = await self.repo.conditional_update(
            donation.id,
            allowed,
            values,
            volunteer_id=None,
        )
        if updated is None:
            await self.db.rollback()
            current = await self._load(donation_id)
            if (
                current.lifecycle_status == DonationStatus.ASSIGNED
                and current.volunteer_id == actor.id
            ):
                return current
            logger.info(f"Volunteer {actor.id} lost the claim on donation {donation_id}")
            raise ConflictError(
                "Donation has already been taken by another volunteer",
                code="already_taken",
            )

        return await self._accept(
            updated,
            status,
            actor,
            volunteerId=str(actor.id),
            pickupDeadline=commitment.pickup_deadline.isoformat(),
            deliveryDeadline=commitment.delivery_deadline.isoformat(),
        )

    async def generate_otp(
        self,
        actor: Actor,
        donation_id: uuid.UUID,
        stage: Union[OtpStage, str, None],
    ) -> Donation:
        """
        Issue a fresh code for the stage, overwriting any unverified one, and
        send it to the donor (pickup) or recipient (delivery).
        """
        self._require_role(actor, Role.VOLUNTEER, "Only the assigned volunteer can trigger OTP")
        stage = self._parse_stage(stage)

        donation = await self._load(donation_id)
        self._require_assigned_volunteer(donation, actor)

        status = donation.lifecycle_status
        if not can_transition(status, stage.target_status):
            if stage == OtpStage.PICKUP:
                raise InvalidStateError("Donation must be in assigned state for pickup OTP")
            raise InvalidStateError("Donation must be picked up before delivery OTP")

        contact_id = donation.donor_id if stage == OtpStage.PICKUP else donation.recipient_id
        if contact_id is None:
            raise InvalidStateError(
                "Donation has no recipient to deliver to",
                code="no_recipient",
            )

        otp = new_otp(self.now(), self.otp_ttl_seconds)
        updated = await self.repo.conditional_update(
            donation.id,
            stage.required_status,
            otp_columns(stage, otp),
            volunteer_id=actor.id,
        )
        if updated is None:
            await self.db.rollback()
            raise ConflictError("Donation changed while generating OTP. Please retry.")

        await self.repo.record_event(
            updated,
            stage.event.value,
            status,
            actor_id=actor.id,
            actor_role=actor.role.value,
            details={"stage": stage.value, "expiresAt": otp.expires_at.isoformat()},
        )
        await self.db.commit()
        logger.info(f"{stage.display_name} OTP generated for donation {updated.id}")

        await self._dispatch_otp_email(updated, contact_id, otp.code, stage)

        contact_key = "donorId" if stage == OtpStage.PICKUP else "recipientId"
        await self._publish(
            stage.event,
            self._payload(
                updated,
                stage=stage.value,
                otp=otp.code,
                expiresAt=otp.expires_at.isoformat(),
                **{contact_key: str(contact_id)},
            ),
        )
        return updated

    async def advance_status(
        self,
        actor: Actor,
        donation_id: uuid.UUID,
        target_status: Union[DonationStatus, str, None],
        submitted_otp: Optional[str],
    ) -> Donation:
        """
        Verify the stage OTP and advance to picked or delivered.

        Verification and the status change land in one conditional write,
        guarded on the code still being the one checked and still unverified.
        """
        self._require_role(actor, Role.VOLUNTEER, "Not authorized")
        target = self._parse_advance_target(target_status)
        stage = OtpStage.for_target(target)

        donation = await self._load(donation_id)
        self._require_assigned_volunteer(donation, actor)

        status = donation.lifecycle_status
        if not can_transition(status, target):
            raise InvalidStateError(
                f"Invalid status transition. Expecting: {stage.required_status.value}"
            )

        otp_state = donation.otp_for(stage)
        now = self.now()
        verify_otp(otp_state, stage, submitted_otp, now)

        timestamp_field = "picked_at" if stage == OtpStage.PICKUP else "delivered_at"
        previous_stamp = donation.assigned_at if stage == OtpStage.PICKUP else donation.picked_at
        prefix = f"{stage.value}_otp"

        updated = await self.repo.conditional_update(
            donation.id,
            stage.required_status,
            {
                "status": target,
                timestamp_field: self._stage_time(now, previous_stamp),
                f"{prefix}_verified": True,
            },
            volunteer_id=actor.id,
            **{f"{prefix}_code": otp_state.code, f"{prefix}_verified": False},
        )
        if updated is None:
            await self.db.rollback()
            raise ConflictError("OTP was regenerated or already used. Please retry.")

        return await self._accept(updated, status, actor, stage=stage.value)

    async def complete_donation(self, actor: Actor, donation_id: uuid.UUID) -> Donation:
        """Recipient confirms receipt."""
        self._require_role(actor, Role.RECIPIENT, "Only recipient can confirm completion")
        donation = await self._load(donation_id)

        if donation.recipient_id != actor.id:
            raise InvalidStateError("This donation was not requested by you", code="not_recipient")

        status = donation.lifecycle_status
        if not can_transition(status, DonationStatus.COMPLETED):
            raise InvalidStateError("Donation must be delivered first")

        updated = await self.repo.conditional_update(
            donation.id,
            DonationStatus.DELIVERED,
            {
                "status": DonationStatus.COMPLETED,
                "completed_at": self._stage_time(self.now(), donation.delivered_at),
            },
            recipient_id=actor.id,
        )
        if updated is None:
            await self.db.rollback()
            raise ConflictError("Donation changed while completing. Please retry.")

        return await self._accept(updated, status, actor)

    async def expire_donations(self) -> List[Donation]:
        """
        Sweep posted/requested donations whose expiry has passed.

        Clears the recipient reference on expired requests; who requested it
        remains in the event history.
        """
        now = self.now()
        stale = Donation.expiry_date < now
        candidates = await self.repo.find(statuses=EXPIRABLE_STATUSES, conditions=[stale])

        expired: List[Donation] = []
        for candidate in candidates:
            previous = candidate.lifecycle_status
            previous_recipient = candidate.recipient_id
            updated = await self.repo.conditional_update(
                candidate.id,
                EXPIRABLE_STATUSES,
                {
                    "status": DonationStatus.EXPIRED,
                    "expired_at": now,
                    "recipient_id": None,
                    "recipient_latitude": None,
                    "recipient_longitude": None,
                    "recipient_address": None,
                },
                conditions=[stale],
            )
            if updated is None:
                # Claimed between the scan and the write
                continue
            await self.repo.record_event(
                updated,
                LifecycleEvent.DONATION_UPDATED.value,
                previous,
                actor_role=SYSTEM_ROLE,
                details={
                    "recipientId": str(previous_recipient) if previous_recipient else None,
                },
            )
            expired.append(updated)

        await self.db.commit()
        if expired:
            logger.info(f"Expired {len(expired)} donations")

        for donation in expired:
            await self._publish(LifecycleEvent.DONATION_UPDATED, self._payload(donation))
        return expired

    # ------------------------------------------------------------------
    # Guards and helpers
    # ------------------------------------------------------------------

    def _require_role(self, actor: Actor, role: Role, message: str) -> None:
        if actor.role != role:
            raise AuthorizationError(message)

    def _require_assigned_volunteer(self, donation: Donation, actor: Actor) -> None:
        if donation.volunteer_id != actor.id:
            raise InvalidStateError("You are not assigned to this donation", code="not_assigned")

    def _assignable_statuses(self):
        if self.allow_assign_without_request:
            return ASSIGNABLE_STATUSES
        return frozenset({DonationStatus.REQUESTED})

    async def _load(self, donation_id: uuid.UUID) -> Donation:
        donation = await self.repo.find_by_id(donation_id)
        if donation is None:
            raise NotFoundError("Donation not found")
        return donation

    def _parse_stage(self, stage: Union[OtpStage, str, None]) -> OtpStage:
        try:
            return OtpStage(stage)
        except ValueError:
            raise ValidationError("Invalid OTP type", code="invalid_otp_type")

    def _parse_advance_target(self, target: Union[DonationStatus, str, None]) -> DonationStatus:
        try:
            status = DonationStatus(target)
        except ValueError:
            raise ValidationError("Invalid status provided", code="invalid_target_status")
        if status not in (DonationStatus.PICKED, DonationStatus.DELIVERED):
            raise ValidationError("Invalid status provided", code="invalid_target_status")
        return status

    def _parse_expiry(self, value: Union[datetime, str]) -> datetime:
        if isinstance(value, datetime):
            return as_utc(value)
        try:
            text = str(value).strip()
            if text.endswith(("Z", "z")):
                text = text[:-1] + "+00:00"
            return as_utc(datetime.fromisoformat(text))
        except ValueError:
            raise ValidationError("Invalid expiry date", code="invalid_expiry")

    def _stage_time(self, now: datetime, previous: Optional[datetime]) -> datetime:
        """Stage timestamps never run backwards."""
        previous = as_utc(previous)
        if previous is not None and previous > now:
            return previous
        return now

    def _payload(self, donation: Donation, **extra: Any) -> Dict[str, Any]:
        payload = {
            "donationId": str(donation.id),
            "status": donation.status,
            "foodType": donation.food_type,
        }
        payload.update(extra)
        return payload

    async def _accept(
        self,
        donation: Donation,
        from_status: DonationStatus,
        actor: Actor,
        **details: Any,
    ) -> Donation:
        """Record the history row, commit, log and publish donationUpdated."""
        await self.repo.record_event(
            donation,
            LifecycleEvent.DONATION_UPDATED.value,
            from_status,
            actor_id=actor.id,
            actor_role=actor.role.value,
            details=details or None,
        )
        await self.db.commit()

        logger.info(
            f"Donation {donation.id} {from_status.value} -> {donation.status} by {actor.role.value} {actor.id}"
        )
        await self._publish(LifecycleEvent.DONATION_UPDATED, self._payload(donation))
        return donation

    async def _publish(self, event: LifecycleEvent, payload: Dict[str, Any]) -> None:
        """Best-effort fan-out; failures are logged and swallowed."""
        try:
            await asyncio.wait_for(
                self.publisher.publish(event.value, payload),
                timeout=self.notification_timeout,
            )
        except Exception as e:
            logger.warning(
                f"Failed to publish {event.value} for donation {payload.get('donationId')}: {e}",
                exc_info=True,
            )

    async def _dispatch_otp_email(
        self,
        donation: Donation,
        contact_id: uuid.UUID,
        code: str,
        stage: OtpStage,
    ) -> None:
        """Look up the contact and hand the code to the email dispatcher; failures never block the flow."""
        try:
            contact = await self.user_service.get_user_by_id(contact_id)
            if not contact or not contact.email:
                logger.warning(
                    f"No email on file for {stage.value} contact {contact_id} of donation {donation.id}"
                )
                return
            await asyncio.wait_for(
                self.email_dispatcher.send_otp_email(contact.email, code, stage),
                timeout=self.notification_timeout,
            )
        except Exception as e:
            logger.warning(
                f"Failed to dispatch {stage.value} OTP email for donation {donation.id}: {e}",
                exc_info=True,
            )
