"""
User Service - actor directory lookups and admin upserts.
"""

import uuid
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.fsm.states import Role
from app.models.user import User

logger = logging.getLogger(__name__)


class UserService:
    """Service for actor contact records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        """Get user by ID."""
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def upsert_user(
        self,
        user_id: uuid.UUID,
        name: str,
        role: Role,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        """Create or update the contact record for an externally issued identity."""
        user = await self.get_user_by_id(user_id)
        email = self._normalize_email(email) if email else None
        phone = self._normalize_phone(phone) if phone else None

        if user:
            user.name = name
            user.role = role.value
            user.email = email
            user.phone = phone
            user.updated_at = datetime.now(timezone.utc)
            logger.info(f"Updated user {user_id} ({role.value})")
            return user

        user = User(
            id=user_id,
            name=name,
            role=role.value,
            email=email,
            phone=phone,
        )
        self.db.add(user)
        await self.db.flush()

        logger.info(f"Created user {user_id} ({role.value})")
        return user

    def _normalize_email(self, email: str) -> str:
        return email.strip().lower()

    def _normalize_phone(self, phone: str) -> str:
        """Normalize phone number (remove spaces, dashes)."""
        return "".join(c for c in phone if c.isdigit())
