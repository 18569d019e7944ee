import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.fsm.actor import Actor
from app.fsm.machine import DonationLifecycle
from app.fsm.states import Role
from app.services.email_service import CeleryEmailDispatcher
from app.services.notification_service import RedisNotificationPublisher


async def get_actor(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(None, alias="X-Actor-Role"),
) -> Actor:
    """
    Read the authenticated actor set by the gateway.
    Identity is issued upstream; this only parses it.
    """
    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing actor identity",
        )

    try:
        actor_id = uuid.UUID(x_actor_id)
        role = Role(x_actor_role.strip().lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid actor identity",
        )

    return Actor(id=actor_id, role=role)


async def get_lifecycle(db: AsyncSession = Depends(get_db)) -> DonationLifecycle:
    """Lifecycle bound to the request's session."""
    return DonationLifecycle(
        db,
        publisher=RedisNotificationPublisher(),
        email_dispatcher=CeleryEmailDispatcher(),
    )


async def verify_admin_key(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> None:
    """Verify admin API key from header."""
    valid_key = settings.admin_api_key
    if not x_admin_key or not valid_key or x_admin_key != valid_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )
