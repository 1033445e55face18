from typing import Optional
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy import or_
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from app.core.clock import utcnow
from app.core.exceptions import StoreFailure
from app.models.subscription import SubscriptionStatus, UserSubscription
import logging

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def minor_to_major(minor_units) -> Decimal:
    """Convert provider minor units (cents) to a 2-place major-unit amount, half-up."""
    if minor_units is None:
        minor_units = 0
    return (Decimal(str(minor_units)) / Decimal(100)).quantize(_CENT, rounding=ROUND_HALF_UP)


_UPSERT_BUILDERS = {
    "sqlite": sqlite_insert,
    "postgresql": postgresql_insert,
}


class UserSubscriptionService:
    """Projection of the provider's subscription state, one row per user.

    Writes are last-write-wins on ``user_id``. With ``reject_stale_events`` an
    upsert carrying an ``event_at`` older than the stored ``last_event_at`` is
    dropped instead. Fields passed as None leave the stored value untouched.
    """

    def __init__(self, session_factory, reject_stale_events: bool = False):
        self.session_factory = session_factory
        self.reject_stale_events = reject_stale_events

    async def upsert(
        self,
        user_id: str,
        plan: Optional[str],
        status: SubscriptionStatus | str,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        event_at: Optional[datetime] = None,
    ) -> None:
        now = utcnow()
        changes = {
            "status": SubscriptionStatus(status).value,
            "updated_at": now,
        }
        optional_changes = {
            "plan": plan,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "last_event_at": event_at,
        }
        changes.update({key: value for key, value in optional_changes.items() if value is not None})

        try:
            async with self.session_factory() as session:
                dialect = session.get_bind().dialect.name
                builder = _UPSERT_BUILDERS.get(dialect)
                if builder is not None:
                    await self._upsert_on_conflict(session, builder, user_id, changes, event_at, now)
                else:
                    await self._upsert_read_then_write(session, user_id, changes, event_at)
        except SQLAlchemyError as e:
            logger.error(f"Failed to upsert subscription for user {user_id}: {e}")
            raise StoreFailure(f"Failed to upsert subscription for user {user_id}") from e

        logger.info(f"Subscription for user {user_id} set to {changes['status']} (plan={plan})")

    async def _upsert_on_conflict(self, session, builder, user_id, changes, event_at, now):
        stmt = builder(UserSubscription).values(user_id=user_id, created_at=now, **changes)
        where = None
        if self.reject_stale_events and event_at is not None:
            where = or_(
                UserSubscription.last_event_at.is_(None),
                UserSubscription.last_event_at <= event_at,
            )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_=changes,
            where=where,
        )
        await session.execute(stmt)
        await session.commit()

    async def _upsert_read_then_write(self, session, user_id, changes, event_at, retry: bool = True):
        subscription = await session.get(UserSubscription, user_id)
        if subscription is None:
            subscription = UserSubscription(user_id=user_id)
        elif self._is_stale(subscription, event_at):
            logger.info(f"Ignoring stale subscription event for user {user_id}")
            return

        for key, value in changes.items():
            setattr(subscription, key, value)
        session.add(subscription)
        try:
            await session.commit()
        except IntegrityError:
            # Lost the insert race to a concurrent delivery; apply on top of its row.
            await session.rollback()
            if not retry:
                raise
            await self._upsert_read_then_write(session, user_id, changes, event_at, retry=False)

    def _is_stale(self, subscription: UserSubscription, event_at: Optional[datetime]) -> bool:
        if not self.reject_stale_events or event_at is None or subscription.last_event_at is None:
            return False
        return event_at < subscription.last_event_at

    async def get(self, user_id: str) -> Optional[UserSubscription]:
        async with self.session_factory() as session:
            return await session.get(UserSubscription, user_id)
