"""User model - actor directory used for OTP delivery and display names."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.fsm.states import Role


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    Actor reference record.
    Identity is issued elsewhere; this table only holds the contact
    channel the lifecycle needs to address OTP codes.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # donor / volunteer / recipient / admin
    role: Mapped[str] = mapped_column(
        String(20),
        default=Role.DONOR.value,
        nullable=False,
        index=True,
    )

    # OTP email destination
    email: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )

    phone: Mapped[Optional[str]] = mapped_column(
        String(20),
        unique=True,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<User {self.id} {self.role}>"
