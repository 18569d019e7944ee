"""
Tests for the donation lifecycle state machine.
"""

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest

from app.fsm.actor import Actor
from app.fsm.clock import as_utc
from app.fsm.commitment import parse_deadline
from app.fsm.errors import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    OtpExpiredError,
    OtpMismatchError,
    OtpNotGeneratedError,
    ValidationError,
)
from app.fsm.states import (
    ALLOWED_TRANSITIONS,
    DonationStatus,
    OtpStage,
    RECIPIENT_BOUND_STATUSES,
    Role,
    VOLUNTEER_BOUND_STATUSES,
)
from app.services.donation_repository import DonationRepository
from app.utils.geo import GeoPoint


async def post(lifecycle, donor, clock, hours=6, **overrides):
    """Post a donation expiring `hours` from the fake clock."""
    fields = {
        "food_type": "Veg biryani",
        "quantity": "5 meals",
        "expiry_date": clock.now + timedelta(hours=hours),
        "latitude": 12.9716,
        "longitude": 77.5946,
        "address": "MG Road",
    }
    fields.update(overrides)
    return await lifecycle.create_donation(donor, **fields)


def assert_invariants(donation):
    status = donation.lifecycle_status
    if status in RECIPIENT_BOUND_STATUSES:
        assert donation.recipient_id is not None
    if status in VOLUNTEER_BOUND_STATUSES:
        assert donation.volunteer_id is not None
        assert donation.commitment is not None
        assert donation.commitment.pickup_deadline < donation.commitment.delivery_deadline
        assert donation.commitment.delivery_deadline <= as_utc(donation.expiry_date)
    if status in (DonationStatus.PICKED, DonationStatus.DELIVERED, DonationStatus.COMPLETED):
        assert donation.pickup_otp.verified
    if status in (DonationStatus.DELIVERED, DonationStatus.COMPLETED):
        assert donation.delivery_otp.verified


async def walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines):
    donation = await post(lifecycle, donor, clock)
    await lifecycle.request_donation(recipient, donation.id, GeoPoint(12.9352, 77.6245), "Shelter")
    return await lifecycle.assign_donation(volunteer, donation.id, *deadlines())


async def walk_to_picked(lifecycle, donor, recipient, volunteer, clock, deadlines):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    donation = await lifecycle.generate_otp(volunteer, donation.id, "pickup")
    return await lifecycle.advance_status(
        volunteer, donation.id, "picked", donation.pickup_otp.code
    )


# ----------------------------------------------------------------------
# End to end
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_lifecycle(
    db, lifecycle, contacts, donor, recipient, volunteer, clock, deadlines,
    publisher, email_dispatcher,
):
    """Posted through completed with both OTP handshakes."""
    donation = await post(lifecycle, donor, clock)
    assert donation.status == "posted"
    assert donation.donor_id == donor.id

    clock.advance(minutes=5)
    donation = await lifecycle.request_donation(
        recipient, donation.id, GeoPoint(12.9352, 77.6245), "Shelter"
    )
    assert donation.status == "requested"
    assert donation.recipient_id == recipient.id
    assert donation.recipient_address == "Shelter"
    assert_invariants(donation)

    clock.advance(minutes=5)
    pickup, delivery = deadlines()
    donation = await lifecycle.assign_donation(volunteer, donation.id, pickup, delivery)
    assert donation.status == "assigned"
    assert donation.volunteer_id == volunteer.id
    assert donation.commitment.pickup_deadline == parse_deadline(pickup, "pickup")
    assert donation.commitment.delivery_deadline == parse_deadline(delivery, "delivery")
    assert not donation.pickup_otp.is_generated
    assert_invariants(donation)

    clock.advance(minutes=30)
    donation = await lifecycle.generate_otp(volunteer, donation.id, "pickup")
    address, code, stage = email_dispatcher.send_otp_email.call_args.args
    assert address == "donor@example.com"
    assert stage == OtpStage.PICKUP
    assert code == donation.pickup_otp.code
    assert donation.status == "assigned"

    clock.advance(minutes=1)
    donation = await lifecycle.advance_status(volunteer, donation.id, "picked", code)
    assert donation.status == "picked"
    assert donation.pickup_otp.verified
    assert_invariants(donation)

    clock.advance(minutes=20)
    donation = await lifecycle.generate_otp(volunteer, donation.id, OtpStage.DELIVERY)
    address, code, stage = email_dispatcher.send_otp_email.call_args.args
    assert address == "recipient@example.com"
    assert stage == OtpStage.DELIVERY

    clock.advance(minutes=1)
    donation = await lifecycle.advance_status(volunteer, donation.id, "delivered", code)
    assert donation.status == "delivered"
    assert donation.delivery_otp.verified
    assert_invariants(donation)

    clock.advance(minutes=2)
    donation = await lifecycle.complete_donation(recipient, donation.id)
    assert donation.status == "completed"
    assert_invariants(donation)

    stamps = [
        as_utc(donation.assigned_at),
        as_utc(donation.picked_at),
        as_utc(donation.delivered_at),
        as_utc(donation.completed_at),
    ]
    assert stamps == sorted(stamps)
    assert email_dispatcher.send_otp_email.await_count == 2

    expected_events = [
        "donationCreated",
        "donationUpdated",
        "donationUpdated",
        "pickupOtpGenerated",
        "donationUpdated",
        "deliveryOtpGenerated",
        "donationUpdated",
        "donationUpdated",
    ]
    published = [c.args[0] for c in publisher.publish.call_args_list]
    assert published == expected_events

    events = await DonationRepository(db).list_events(donation.id)
    assert [e.event_name for e in events] == expected_events
    assert [e.to_status for e in events] == [
        "posted", "requested", "assigned", "assigned",
        "picked", "picked", "delivered", "completed",
    ]


@pytest.mark.asyncio
async def test_volunteer_can_take_posted_donation(lifecycle, donor, volunteer, clock, deadlines):
    donation = await post(lifecycle, donor, clock)
    donation = await lifecycle.assign_donation(volunteer, donation.id, *deadlines())
    assert donation.status == "assigned"
    assert donation.recipient_id is None


@pytest.mark.asyncio
async def test_delivery_otp_needs_a_recipient(lifecycle, donor, volunteer, clock, deadlines):
    donation = await post(lifecycle, donor, clock)
    donation = await lifecycle.assign_donation(volunteer, donation.id, *deadlines())
    donation = await lifecycle.generate_otp(volunteer, donation.id, "pickup")
    await lifecycle.advance_status(volunteer, donation.id, "picked", donation.pickup_otp.code)

    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.generate_otp(volunteer, donation.id, "delivery")
    assert exc.value.code == "no_recipient"


# ----------------------------------------------------------------------
# Create
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_publishes_summary(lifecycle, donor, clock, publisher):
    donation = await post(lifecycle, donor, clock)
    event_name, payload = publisher.publish.call_args.args
    assert event_name == "donationCreated"
    assert payload["donationId"] == str(donation.id)
    assert payload["donorId"] == str(donor.id)
    assert payload["quantity"] == "5 meals"


@pytest.mark.asyncio
async def test_create_accepts_iso_expiry(lifecycle, donor, clock):
    expiry = (clock.now + timedelta(hours=3)).strftime("%Y-%m-%dT%H:%M:%SZ")
    donation = await post(lifecycle, donor, clock, expiry_date=expiry)
    assert as_utc(donation.expiry_date) == clock.now + timedelta(hours=3)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides,code",
    [
        ({"food_type": "  "}, "food_type_required"),
        ({"quantity": ""}, "quantity_required"),
        ({"latitude": None}, "location_required"),
        ({"latitude": 95.0}, "invalid_location"),
        ({"expiry_date": "next tuesday"}, "invalid_expiry"),
    ],
)
async def test_create_validation(lifecycle, donor, clock, overrides, code):
    with pytest.raises(ValidationError) as exc:
        await post(lifecycle, donor, clock, **overrides)
    assert exc.value.code == code


@pytest.mark.asyncio
async def test_create_rejects_past_expiry(lifecycle, donor, clock):
    with pytest.raises(ValidationError) as exc:
        await post(lifecycle, donor, clock, hours=-1)
    assert exc.value.code == "expiry_in_past"


@pytest.mark.asyncio
async def test_only_donors_post(lifecycle, volunteer, clock):
    with pytest.raises(AuthorizationError):
        await post(lifecycle, volunteer, clock)


# ----------------------------------------------------------------------
# Request
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_role_checked_before_lookup(lifecycle, donor):
    with pytest.raises(AuthorizationError):
        await lifecycle.request_donation(donor, uuid.uuid4())


@pytest.mark.asyncio
async def test_request_unknown_donation(lifecycle, recipient):
    with pytest.raises(NotFoundError) as exc:
        await lifecycle.request_donation(recipient, uuid.uuid4())
    assert exc.value.message == "Donation not found"


@pytest.mark.asyncio
async def test_request_twice(lifecycle, donor, recipient, clock):
    donation = await post(lifecycle, donor, clock)
    await lifecycle.request_donation(recipient, donation.id)

    other = Actor(id=uuid.uuid4(), role=Role.RECIPIENT)
    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.request_donation(other, donation.id)
    assert exc.value.code == "not_available"
    assert exc.value.message == "Donation is not available"


@pytest.mark.asyncio
async def test_request_without_location(lifecycle, donor, recipient, clock):
    donation = await post(lifecycle, donor, clock)
    donation = await lifecycle.request_donation(recipient, donation.id)
    assert donation.recipient_id == recipient.id
    assert not donation.has_recipient_location


@pytest.mark.asyncio
async def test_request_at_expiry_rejected(lifecycle, donor, recipient, clock):
    donation = await post(lifecycle, donor, clock, hours=1)
    clock.advance(hours=1)
    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.request_donation(recipient, donation.id)
    assert exc.value.code == "donation_expired"


# ----------------------------------------------------------------------
# Assign
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_assign_is_idempotent_for_same_volunteer(
    db, lifecycle, donor, recipient, volunteer, clock, deadlines, publisher,
):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    commitment = donation.commitment
    published = publisher.publish.await_count

    again = await lifecycle.assign_donation(volunteer, donation.id, *deadlines(3, 4))
    assert again.status == "assigned"
    assert again.commitment == commitment
    assert publisher.publish.await_count == published

    events = await DonationRepository(db).list_events(donation.id)
    assert len(events) == 3


@pytest.mark.asyncio
async def test_assign_taken_by_other_volunteer(
    lifecycle, donor, recipient, volunteer, other_volunteer, clock, deadlines,
):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with pytest.raises(ConflictError) as exc:
        await lifecycle.assign_donation(other_volunteer, donation.id, *deadlines())
    assert exc.value.code == "already_taken"
    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_reassign_after_pickup_is_invalid_state(
    lifecycle, donor, recipient, volunteer, clock, deadlines,
):
    donation = await walk_to_picked(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.assign_donation(volunteer, donation.id, *deadlines())
    assert exc.value.status_code == 400
    assert exc.value.message == "Donation status is 'picked', expected 'posted' or 'requested'"


@pytest.mark.asyncio
async def test_assign_after_pickup_by_other_volunteer_conflicts(
    lifecycle, donor, recipient, volunteer, other_volunteer, clock, deadlines,
):
    donation = await walk_to_picked(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with pytest.raises(ConflictError) as exc:
        await lifecycle.assign_donation(other_volunteer, donation.id, *deadlines())
    assert exc.value.code == "already_taken"


@pytest.mark.asyncio
async def test_assign_rejects_delivery_after_expiry(lifecycle, donor, volunteer, clock, deadlines):
    donation = await post(lifecycle, donor, clock, hours=2)
    with pytest.raises(ValidationError) as exc:
        await lifecycle.assign_donation(volunteer, donation.id, *deadlines(1, 3))
    assert exc.value.message == "Delivery time cannot exceed expiry date"


@pytest.mark.asyncio
async def test_assign_delivery_at_expiry_accepted(lifecycle, donor, volunteer, clock, deadlines):
    donation = await post(lifecycle, donor, clock, hours=2)
    donation = await lifecycle.assign_donation(volunteer, donation.id, *deadlines(1, 2))
    assert donation.status == "assigned"


@pytest.mark.asyncio
async def test_assign_validates_before_lookup(lifecycle, volunteer):
    with pytest.raises(ValidationError) as exc:
        await lifecycle.assign_donation(volunteer, uuid.uuid4(), None, None)
    assert exc.value.code == "deadlines_required"


@pytest.mark.asyncio
async def test_assign_restricted_to_requested(db, make_lifecycle, donor, volunteer, clock, deadlines):
    lifecycle = make_lifecycle(db, allow_assign_without_request=False)
    donation = await post(lifecycle, donor, clock)
    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.assign_donation(volunteer, donation.id, *deadlines())
    assert exc.value.message == "Donation status is 'posted', expected 'requested'"


@pytest.mark.asyncio
async def test_assign_expired_donation(lifecycle, donor, volunteer, clock, deadlines):
    donation = await post(lifecycle, donor, clock, hours=1)
    clock.advance(hours=2)
    await lifecycle.expire_donations()

    with pytest.raises(InvalidStateError):
        await lifecycle.assign_donation(volunteer, donation.id, *deadlines())


# ----------------------------------------------------------------------
# OTP handshake
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_regenerate_invalidates_previous_code(
    lifecycle, donor, recipient, volunteer, clock, deadlines,
):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with patch("app.fsm.otp.generate_code", side_effect=["111111", "222222"]):
        await lifecycle.generate_otp(volunteer, donation.id, "pickup")
        await lifecycle.generate_otp(volunteer, donation.id, "pickup")

    with pytest.raises(OtpMismatchError):
        await lifecycle.advance_status(volunteer, donation.id, "picked", "111111")

    donation = await lifecycle.advance_status(volunteer, donation.id, "picked", "222222")
    assert donation.status == "picked"


@pytest.mark.asyncio
async def test_code_cannot_be_replayed(lifecycle, donor, recipient, volunteer, clock, deadlines):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    donation = await lifecycle.generate_otp(volunteer, donation.id, "pickup")
    code = donation.pickup_otp.code
    await lifecycle.advance_status(volunteer, donation.id, "picked", code)

    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.advance_status(volunteer, donation.id, "picked", code)
    assert exc.value.message == "Invalid status transition. Expecting: assigned"


@pytest.mark.asyncio
async def test_wrong_code_leaves_donation_unchanged(
    lifecycle, donor, recipient, volunteer, clock, deadlines,
):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with patch("app.fsm.otp.generate_code", return_value="123456"):
        await lifecycle.generate_otp(volunteer, donation.id, "pickup")

    with pytest.raises(OtpMismatchError) as exc:
        await lifecycle.advance_status(volunteer, donation.id, "picked", "654321")
    assert exc.value.message == "Invalid Donor OTP"

    donation = await lifecycle.repo.find_by_id(donation.id)
    assert donation.status == "assigned"
    assert not donation.pickup_otp.verified


@pytest.mark.asyncio
async def test_otp_not_generated(lifecycle, donor, recipient, volunteer, clock, deadlines):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with pytest.raises(OtpNotGeneratedError):
        await lifecycle.advance_status(volunteer, donation.id, "picked", "123456")


@pytest.mark.asyncio
async def test_otp_expiry_boundary(lifecycle, donor, recipient, volunteer, clock, deadlines):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    donation = await lifecycle.generate_otp(volunteer, donation.id, "pickup")
    code = donation.pickup_otp.code

    clock.advance(seconds=301)
    with pytest.raises(OtpExpiredError):
        await lifecycle.advance_status(volunteer, donation.id, "picked", code)

    donation = await lifecycle.generate_otp(volunteer, donation.id, "pickup")
    clock.advance(seconds=300)
    donation = await lifecycle.advance_status(
        volunteer, donation.id, "picked", donation.pickup_otp.code
    )
    assert donation.status == "picked"


@pytest.mark.asyncio
async def test_delivery_otp_requires_pickup(lifecycle, donor, recipient, volunteer, clock, deadlines):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.generate_otp(volunteer, donation.id, "delivery")
    assert exc.value.message == "Donation must be picked up before delivery OTP"


@pytest.mark.asyncio
async def test_pickup_otp_requires_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines):
    donation = await walk_to_picked(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.generate_otp(volunteer, donation.id, "pickup")
    assert exc.value.message == "Donation must be in assigned state for pickup OTP"


@pytest.mark.asyncio
async def test_otp_only_for_assigned_volunteer(
    lifecycle, donor, recipient, volunteer, other_volunteer, clock, deadlines,
):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.generate_otp(other_volunteer, donation.id, "pickup")
    assert exc.value.code == "not_assigned"

    with pytest.raises(InvalidStateError):
        await lifecycle.advance_status(other_volunteer, donation.id, "picked", "123456")


@pytest.mark.asyncio
async def test_invalid_otp_type(lifecycle, volunteer):
    with pytest.raises(ValidationError) as exc:
        await lifecycle.generate_otp(volunteer, uuid.uuid4(), "dropoff")
    assert exc.value.code == "invalid_otp_type"


@pytest.mark.asyncio
@pytest.mark.parametrize("target", ["completed", "assigned", None, "bogus"])
async def test_invalid_advance_target(lifecycle, volunteer, target):
    with pytest.raises(ValidationError) as exc:
        await lifecycle.advance_status(volunteer, uuid.uuid4(), target, "123456")
    assert exc.value.code == "invalid_target_status"


@pytest.mark.asyncio
async def test_advance_requires_volunteer(lifecycle, recipient):
    with pytest.raises(AuthorizationError) as exc:
        await lifecycle.advance_status(recipient, uuid.uuid4(), "picked", "123456")
    assert exc.value.message == "Not authorized"


@pytest.mark.asyncio
async def test_otp_event_carries_code_and_contact(
    lifecycle, donor, recipient, volunteer, clock, deadlines, publisher,
):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    donation = await lifecycle.generate_otp(volunteer, donation.id, "pickup")

    event_name, payload = publisher.publish.call_args.args
    assert event_name == "pickupOtpGenerated"
    assert payload["otp"] == donation.pickup_otp.code
    assert payload["donorId"] == str(donor.id)
    assert payload["stage"] == "pickup"


@pytest.mark.asyncio
async def test_no_email_on_file_skips_dispatch(
    lifecycle, donor, recipient, volunteer, clock, deadlines, email_dispatcher,
):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    donation = await lifecycle.generate_otp(volunteer, donation.id, "pickup")
    assert donation.pickup_otp.is_generated
    email_dispatcher.send_otp_email.assert_not_awaited()


# ----------------------------------------------------------------------
# Complete
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_complete_before_delivery(lifecycle, donor, recipient, volunteer, clock, deadlines):
    donation = await walk_to_picked(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.complete_donation(recipient, donation.id)
    assert exc.value.message == "Donation must be delivered first"


@pytest.mark.asyncio
async def test_complete_follows_transition_table(
    lifecycle, donor, recipient, volunteer, clock, deadlines,
):
    donation = await walk_to_picked(lifecycle, donor, recipient, volunteer, clock, deadlines)
    donation = await lifecycle.generate_otp(volunteer, donation.id, "delivery")
    donation = await lifecycle.advance_status(
        volunteer, donation.id, "delivered", donation.delivery_otp.code
    )

    with patch.dict(ALLOWED_TRANSITIONS, {DonationStatus.DELIVERED: frozenset()}):
        with pytest.raises(InvalidStateError) as exc:
            await lifecycle.complete_donation(recipient, donation.id)
    assert exc.value.message == "Donation must be delivered first"

    donation = await lifecycle.complete_donation(recipient, donation.id)
    assert donation.status == "completed"


@pytest.mark.asyncio
async def test_complete_by_other_recipient(lifecycle, donor, recipient, volunteer, clock, deadlines):
    donation = await walk_to_picked(lifecycle, donor, recipient, volunteer, clock, deadlines)
    other = Actor(id=uuid.uuid4(), role=Role.RECIPIENT)
    with pytest.raises(InvalidStateError) as exc:
        await lifecycle.complete_donation(other, donation.id)
    assert exc.value.code == "not_recipient"


@pytest.mark.asyncio
async def test_complete_requires_recipient_role(lifecycle, donor):
    with pytest.raises(AuthorizationError):
        await lifecycle.complete_donation(donor, uuid.uuid4())


# ----------------------------------------------------------------------
# Side effects never fail a transition
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_publisher_failure_is_swallowed(lifecycle, donor, clock, publisher):
    publisher.publish.side_effect = ConnectionError("redis down")
    donation = await post(lifecycle, donor, clock)

    stored = await lifecycle.repo.find_by_id(donation.id)
    assert stored.status == "posted"


@pytest.mark.asyncio
async def test_slow_publisher_times_out(db, make_lifecycle, donor, clock, publisher):
    async def hang(*args, **kwargs):
        await asyncio.sleep(5)

    publisher.publish.side_effect = hang
    lifecycle = make_lifecycle(db, notification_timeout=0.05)
    donation = await post(lifecycle, donor, clock)
    assert donation.status == "posted"


@pytest.mark.asyncio
async def test_email_failure_is_swallowed(
    lifecycle, contacts, donor, recipient, volunteer, clock, deadlines, email_dispatcher,
):
    email_dispatcher.send_otp_email.side_effect = OSError("smtp down")
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    donation = await lifecycle.generate_otp(volunteer, donation.id, "pickup")

    email_dispatcher.send_otp_email.assert_awaited_once()
    donation = await lifecycle.advance_status(
        volunteer, donation.id, "picked", donation.pickup_otp.code
    )
    assert donation.status == "picked"


@pytest.mark.asyncio
async def test_contact_lookup_failure_is_swallowed(
    lifecycle, contacts, donor, recipient, volunteer, clock, deadlines,
    publisher, email_dispatcher,
):
    donation = await walk_to_assigned(lifecycle, donor, recipient, volunteer, clock, deadlines)
    with patch.object(
        lifecycle.user_service, "get_user_by_id", side_effect=RuntimeError("directory down")
    ):
        donation = await lifecycle.generate_otp(volunteer, donation.id, "pickup")

    assert donation.pickup_otp.is_generated
    email_dispatcher.send_otp_email.assert_not_awaited()

    event_name, payload = publisher.publish.call_args.args
    assert event_name == "pickupOtpGenerated"
    assert payload["otp"] == donation.pickup_otp.code

    stored = await lifecycle.repo.find_by_id(donation.id)
    assert stored.pickup_otp.code == donation.pickup_otp.code


# ----------------------------------------------------------------------
# Expiry sweep
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_expiry_sweep(db, lifecycle, donor, recipient, volunteer, clock, deadlines, publisher):
    open_posted = await post(lifecycle, donor, clock, hours=1)
    open_requested = await post(lifecycle, donor, clock, hours=1)
    await lifecycle.request_donation(recipient, open_requested.id, GeoPoint(12.93, 77.62))
    in_transit = await post(lifecycle, donor, clock, hours=1)
    await lifecycle.assign_donation(volunteer, in_transit.id, *deadlines(0.25, 0.5))
    fresh = await post(lifecycle, donor, clock, hours=10)

    clock.advance(hours=2)
    expired = await lifecycle.expire_donations()
    assert {d.id for d in expired} == {open_posted.id, open_requested.id}

    repo = DonationRepository(db)
    requested = await repo.find_by_id(open_requested.id)
    assert requested.status == "expired"
    assert requested.recipient_id is None
    assert not requested.has_recipient_location
    assert as_utc(requested.expired_at) == clock.now

    assert (await repo.find_by_id(in_transit.id)).status == "assigned"
    assert (await repo.find_by_id(fresh.id)).status == "posted"

    history = await repo.list_events(open_requested.id)
    last = history[-1]
    assert last.actor_role == "system"
    assert last.from_status == "requested"
    assert last.to_status == "expired"
    assert last.details["recipientId"] == str(recipient.id)

    assert publisher.publish.call_args.args[0] == "donationUpdated"
    assert await lifecycle.expire_donations() == []
