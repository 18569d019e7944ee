"""
Donation Endpoints.
Command surface for the donation lifecycle plus the read views dashboards need.
"""

import uuid
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_actor, get_lifecycle
from app.database import get_db
from app.fsm.actor import Actor
from app.fsm.clock import as_utc, utcnow
from app.fsm.errors import NotFoundError, ValidationError
from app.fsm.machine import DonationLifecycle
from app.fsm.states import ASSIGNABLE_STATUSES, DonationStatus, OtpStage, Role
from app.models.donation import Donation
from app.services.donation_repository import DonationRepository
from app.utils.geo import GeoPoint

router = APIRouter(prefix="/donations", tags=["donations"])
logger = logging.getLogger(__name__)


class CreateDonationRequest(BaseModel):
    """Request body for posting a donation."""
    food_type: str
    quantity: str
    expiry_date: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    image_url: Optional[str] = None


class RequestDonationRequest(BaseModel):
    """Optional drop-off point given when requesting."""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None


class AssignDonationRequest(BaseModel):
    """Deadlines stay raw strings so the validator can name the failing one."""
    pickup_deadline: Optional[str] = None
    delivery_deadline: Optional[str] = None


class GenerateOtpRequest(BaseModel):
    type: Optional[str] = None


class AdvanceStatusRequest(BaseModel):
    status: Optional[str] = None
    otp: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def serialize_donation(donation: Donation) -> Dict[str, Any]:
    """Snapshot for API responses. OTP codes are never included."""
    commitment = donation.commitment

    def otp_view(stage: OtpStage) -> Dict[str, Any]:
        state = donation.otp_for(stage)
        return {
            "generated_at": _iso(state.generated_at),
            "expires_at": _iso(state.expires_at),
            "verified": state.verified,
        }

    recipient_location = None
    if donation.has_recipient_location:
        recipient_location = {
            "latitude": donation.recipient_latitude,
            "longitude": donation.recipient_longitude,
            "address": donation.recipient_address,
        }

    return {
        "id": str(donation.id),
        "donor_id": str(donation.donor_id),
        "food_type": donation.food_type,
        "quantity": donation.quantity,
        "image_url": donation.image_url,
        "expiry_date": _iso(donation.expiry_date),
        "location": {
            "latitude": donation.pickup_latitude,
            "longitude": donation.pickup_longitude,
            "address": donation.pickup_address,
        },
        "status": donation.status,
        "recipient_id": str(donation.recipient_id) if donation.recipient_id else None,
        "volunteer_id": str(donation.volunteer_id) if donation.volunteer_id else None,
        "recipient_location": recipient_location,
        "commitment": {
            "pickup_deadline": _iso(commitment.pickup_deadline),
            "delivery_deadline": _iso(commitment.delivery_deadline),
        } if commitment else None,
        "pickup_otp": otp_view(OtpStage.PICKUP),
        "delivery_otp": otp_view(OtpStage.DELIVERY),
        "assigned_at": _iso(donation.assigned_at),
        "picked_at": _iso(donation.picked_at),
        "delivered_at": _iso(donation.delivered_at),
        "completed_at": _iso(donation.completed_at),
        "expired_at": _iso(donation.expired_at),
        "created_at": _iso(donation.created_at),
        "updated_at": _iso(donation.updated_at),
    }


def _response(message: str, donation: Donation) -> Dict[str, Any]:
    return {
        "status": "success",
        "message": message,
        "donation": serialize_donation(donation),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_donation(
    request: CreateDonationRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: DonationLifecycle = Depends(get_lifecycle),
):
    """Donor posts surplus food."""
    donation = await lifecycle.create_donation(
        actor,
        food_type=request.food_type,
        quantity=request.quantity,
        expiry_date=request.expiry_date,
        latitude=request.latitude,
        longitude=request.longitude,
        address=request.address,
        image_url=request.image_url,
    )
    return _response("Donation posted", donation)


@router.get("/my")
async def list_my_donations(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Donations the caller posted, requested or is carrying."""
    repo = DonationRepository(db)
    if actor.role == Role.VOLUNTEER:
        donations = await repo.find(volunteer_id=actor.id)
    elif actor.role == Role.RECIPIENT:
        donations = await repo.find(recipient_id=actor.id)
    else:
        donations = await repo.find(donor_id=actor.id)

    return {
        "status": "success",
        "donations": [serialize_donation(d) for d in donations],
    }


@router.get("/nearby")
async def list_nearby_donations(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    distance_km: Optional[float] = Query(None, gt=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Open donations near a point.

    Recipients see unrequested posted donations; volunteers see unclaimed
    donations they could be assigned.
    """
    repo = DonationRepository(db)
    not_expired = Donation.expiry_date > utcnow()

    if actor.role == Role.RECIPIENT:
        donations = await repo.find(
            statuses=DonationStatus.POSTED,
            unrequested=True,
            near=GeoPoint(lat, lon),
            max_distance_km=distance_km,
            conditions=[not_expired],
        )
    elif actor.role == Role.VOLUNTEER:
        donations = await repo.find(
            statuses=ASSIGNABLE_STATUSES,
            unclaimed=True,
            near=GeoPoint(lat, lon),
            max_distance_km=distance_km,
            conditions=[not_expired],
        )
    else:
        donations = await repo.find(
            statuses=ASSIGNABLE_STATUSES,
            near=GeoPoint(lat, lon),
            max_distance_km=distance_km,
            conditions=[not_expired],
        )

    return {
        "status": "success",
        "donations": [serialize_donation(d) for d in donations],
    }


@router.get("/{donation_id}")
async def get_donation(
    donation_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    donation = await DonationRepository(db).find_by_id(donation_id)
    if not donation:
        raise NotFoundError("Donation not found")
    return {"status": "success", "donation": serialize_donation(donation)}


@router.get("/{donation_id}/events")
async def list_donation_events(
    donation_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Lifecycle history, oldest first."""
    repo = DonationRepository(db)
    if not await repo.find_by_id(donation_id):
        raise NotFoundError("Donation not found")

    events = await repo.list_events(donation_id)
    return {
        "status": "success",
        "events": [
            {
                "event": e.event_name,
                "from_status": e.from_status,
                "to_status": e.to_status,
                "actor_id": str(e.actor_id) if e.actor_id else None,
                "actor_role": e.actor_role,
                "details": e.details,
                "created_at": _iso(e.created_at),
            }
            for e in events
        ],
    }


@router.put("/{donation_id}/request")
async def request_donation(
    donation_id: uuid.UUID,
    request: Optional[RequestDonationRequest] = None,
    actor: Actor = Depends(get_actor),
    lifecycle: DonationLifecycle = Depends(get_lifecycle),
):
    """Recipient requests a posted donation."""
    location = None
    address = None
    if request and (request.latitude is not None or request.longitude is not None):
        if request.latitude is None or request.longitude is None:
            raise ValidationError(
                "Both latitude and longitude are required for a drop-off point",
                code="location_required",
            )
        location = GeoPoint(request.latitude, request.longitude)
        address = request.address

    donation = await lifecycle.request_donation(actor, donation_id, location, address)
    return _response("Donation requested successfully", donation)


@router.put("/{donation_id}/assign")
async def assign_donation(
    donation_id: uuid.UUID,
    request: AssignDonationRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: DonationLifecycle = Depends(get_lifecycle),
):
    """Volunteer accepts a donation and commits to deadlines."""
    donation = await lifecycle.assign_donation(
        actor,
        donation_id,
        request.pickup_deadline,
        request.delivery_deadline,
    )
    return _response("Donation assigned successfully", donation)


@router.post("/{donation_id}/otp")
async def generate_otp(
    donation_id: uuid.UUID,
    request: GenerateOtpRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: DonationLifecycle = Depends(get_lifecycle),
):
    """Volunteer has arrived; send a fresh code to the donor or recipient."""
    donation = await lifecycle.generate_otp(actor, donation_id, request.type)
    return _response(f"{request.type} OTP generated and sent", donation)


@router.put("/{donation_id}/status")
async def advance_status(
    donation_id: uuid.UUID,
    request: AdvanceStatusRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: DonationLifecycle = Depends(get_lifecycle),
):
    """Volunteer submits the OTP to move to picked or delivered."""
    donation = await lifecycle.advance_status(actor, donation_id, request.status, request.otp)
    return _response(f"Status updated to {donation.status}", donation)


@router.put("/{donation_id}/complete")
async def complete_donation(
    donation_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    lifecycle: DonationLifecycle = Depends(get_lifecycle),
):
    """Recipient confirms receipt."""
    donation = await lifecycle.complete_donation(actor, donation_id)
    return _response("Donation completed", donation)
