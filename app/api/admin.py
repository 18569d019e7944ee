"""
Admin Endpoints.
Actor contact records and manual expiry sweeps.
"""

import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_lifecycle, verify_admin_key
from app.database import get_db
from app.fsm.machine import DonationLifecycle
from app.fsm.states import Role
from app.services.user_service import UserService

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


class UpsertUserRequest(BaseModel):
    """Contact record for an identity issued by the auth provider."""
    id: uuid.UUID
    name: str
    role: Role
    email: Optional[str] = None
    phone: Optional[str] = None


@router.post("/users")
async def upsert_user(
    request: UpsertUserRequest,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(verify_admin_key),
):
    """Create or update an actor's contact channel."""
    user = await UserService(db).upsert_user(
        user_id=request.id,
        name=request.name,
        role=request.role,
        email=request.email,
        phone=request.phone,
    )
    return {
        "status": "success",
        "user": {
            "id": str(user.id),
            "name": user.name,
            "role": user.role,
            "email": user.email,
            "phone": user.phone,
        },
    }


@router.post("/donations/expire")
async def run_expiry_sweep(
    lifecycle: DonationLifecycle = Depends(get_lifecycle),
    _: None = Depends(verify_admin_key),
):
    """Run the expiry sweep now instead of waiting for beat."""
    expired = await lifecycle.expire_donations()
    logger.info(f"Manual expiry sweep expired {len(expired)} donations")
    return {
        "status": "success",
        "expired": [str(d.id) for d in expired],
    }
