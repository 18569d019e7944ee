"""
Donation Repository - point lookups, guarded writes and proximity search.

Every state-changing write goes through conditional_update, which only
touches the row if its status (and any guard columns) still hold the values
the caller validated against. Zero rows affected means another transition
got there first.
"""

import uuid
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.fsm.states import DonationStatus
from app.models.donation import Donation
from app.models.donation_event import DonationEvent
from app.utils.geo import GeoPoint, haversine_km

logger = logging.getLogger(__name__)

StatusSet = Union[DonationStatus, Iterable[DonationStatus]]


def _status_values(statuses: StatusSet) -> List[str]:
    if isinstance(statuses, DonationStatus):
        return [statuses.value]
    return [s.value for s in statuses]


class DonationRepository:
    """Data access for donations and their event history."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, donation_id: uuid.UUID) -> Optional[Donation]:
        """Get donation by ID, always re-reading the row."""
        result = await self.db.execute(
            select(Donation)
            .where(Donation.id == donation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add(self, donation: Donation) -> Donation:
        self.db.add(donation)
        await self.db.flush()
        return donation

    async def conditional_update(
        self,
        donation_id: uuid.UUID,
        expected_statuses: StatusSet,
        values: Dict[str, Any],
        conditions: Sequence[Any] = (),
        **guards: Any,
    ) -> Optional[Donation]:
        """
        Compare-and-swap update.

        Applies values only where id matches, status is one of
        expected_statuses, every guard column equals its given value
        (None means IS NULL) and every extra SQL condition holds.

        Returns the refreshed donation, or None if no row matched.
        """
        stmt = update(Donation).where(
            Donation.id == donation_id,
            Donation.status.in_(_status_values(expected_statuses)),
        )
        for column_name, expected in guards.items():
            column = getattr(Donation, column_name)
            stmt = stmt.where(column.is_(None) if expected is None else column == expected)
        for condition in conditions:
            stmt = stmt.where(condition)

        values = {
            key: (value.value if isinstance(value, DonationStatus) else value)
            for key, value in values.items()
        }
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            logger.debug(f"Conditional update on {donation_id} matched no rows")
            return None

        return await self.find_by_id(donation_id)

    async def find(
        self,
        statuses: Optional[StatusSet] = None,
        near: Optional[GeoPoint] = None,
        max_distance_km: Optional[float] = None,
        donor_id: Optional[uuid.UUID] = None,
        recipient_id: Optional[uuid.UUID] = None,
        volunteer_id: Optional[uuid.UUID] = None,
        unclaimed: bool = False,
        unrequested: bool = False,
        conditions: Sequence[Any] = (),
        limit: Optional[int] = None,
    ) -> List[Donation]:
        """
        Filter donations by status and references.

        With near, results are restricted to max_distance_km of the pickup
        point (when given) and ordered nearest first; otherwise newest first.
        """
        stmt = select(Donation).execution_options(populate_existing=True)
        if statuses is not None:
            stmt = stmt.where(Donation.status.in_(_status_values(statuses)))
        if donor_id is not None:
            stmt = stmt.where(Donation.donor_id == donor_id)
        if recipient_id is not None:
            stmt = stmt.where(Donation.recipient_id == recipient_id)
        if volunteer_id is not None:
            stmt = stmt.where(Donation.volunteer_id == volunteer_id)
        if unclaimed:
            stmt = stmt.where(Donation.volunteer_id.is_(None))
        if unrequested:
            stmt = stmt.where(Donation.recipient_id.is_(None))
        for condition in conditions:
            stmt = stmt.where(condition)

        stmt = stmt.order_by(Donation.created_at.desc())
        if limit is not None and near is None:
            stmt = stmt.limit(limit)

        result = await self.db.execute(stmt)
        donations = list(result.scalars().all())

        if near is None:
            return donations

        ranked = []
        for donation in donations:
            distance = haversine_km(
                near.latitude,
                near.longitude,
                donation.pickup_latitude,
                donation.pickup_longitude,
            )
            if max_distance_km is None or distance <= max_distance_km:
                ranked.append((distance, donation))

        ranked.sort(key=lambda item: item[0])
        nearest = [donation for _, donation in ranked]
        return nearest[:limit] if limit is not None else nearest

    async def record_event(
        self,
        donation: Donation,
        event_name: str,
        from_status: Optional[DonationStatus],
        actor_id: Optional[uuid.UUID] = None,
        actor_role: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> DonationEvent:
        """Append a history row in the current transaction."""
        event = DonationEvent(
            donation_id=donation.id,
            event_name=event_name,
            from_status=from_status.value if from_status else None,
            to_status=donation.status,
            actor_id=actor_id,
            actor_role=actor_role,
            details=details,
        )
        self.db.add(event)
        await self.db.flush()
        return event

    async def list_events(self, donation_id: uuid.UUID) -> List[DonationEvent]:
        result = await self.db.execute(
            select(DonationEvent)
            .where(DonationEvent.donation_id == donation_id)
            .order_by(DonationEvent.created_at.asc())
        )
        return list(result.scalars().all())
