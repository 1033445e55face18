import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy import and_, false, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from app.core.clock import utcnow
from app.core.exceptions import StoreFailure
from app.models.webhook_event import WebhookEvent, WebhookEventStatus

logger = logging.getLogger(__name__)

DEFAULT_PROCESSING_LEASE_SECONDS = 300


@dataclass
class LedgerEntry:
    is_new: bool
    row_id: Optional[int]
    status: Optional[str] = None


class WebhookEventLedger:
    """Durable record of received webhook events.

    Duplicate detection relies on the unique ``event_id`` column: the insert is
    the check. Two concurrent deliveries of the same id race on the insert and
    exactly one of them wins. ``processed``/``status`` are bookkeeping only.

    A row left in ``processing`` for longer than ``processing_lease_seconds``
    belongs to a worker that died or timed out, and is claimable again like a
    ``failed`` row.
    """

    def __init__(
        self,
        session_factory,
        provider: str = "creem",
        processing_lease_seconds: int = DEFAULT_PROCESSING_LEASE_SECONDS,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.processing_lease = timedelta(seconds=processing_lease_seconds)

    def _claimable(self, statuses: Iterable[str]):
        statuses = list(statuses)
        processing = WebhookEventStatus.PROCESSING.value
        conditions = []
        settled = [status for status in statuses if status != processing]
        if settled:
            conditions.append(WebhookEvent.status.in_(settled))
        if processing in statuses:
            conditions.append(
                and_(
                    WebhookEvent.status == processing,
                    WebhookEvent.updated_at < utcnow() - self.processing_lease,
                )
            )
        if not conditions:
            return false()
        return or_(*conditions)

    async def record_if_new(
        self,
        event_id: Optional[str],
        event_type: Optional[str],
        raw_payload: str,
        status: str = WebhookEventStatus.PROCESSING.value,
    ) -> LedgerEntry:
        row = WebhookEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=event_type,
            raw_payload=raw_payload,
            status=status,
        )
        try:
            async with self.session_factory() as session:
                session.add(row)
                try:
                    await session.commit()
                    await session.refresh(row)
                except IntegrityError:
                    await session.rollback()
                else:
                    if event_id is None:
                        logger.warning(
                            "Webhook event without id recorded as row %s (type=%s); it cannot be deduplicated",
                            row.id,
                            event_type,
                        )
                    return LedgerEntry(is_new=True, row_id=row.id, status=status)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record webhook event {event_id}: {e}")
            raise StoreFailure("Failed to record webhook event") from e

        return await self._reclaim_unfinished(event_id)

    async def _reclaim_unfinished(self, event_id: str) -> LedgerEntry:
        # Failed rows and expired processing leases are re-claimed by exactly one retry.
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(WebhookEvent)
                    .where(
                        WebhookEvent.event_id == event_id,
                        self._claimable(
                            [WebhookEventStatus.FAILED.value, WebhookEventStatus.PROCESSING.value]
                        ),
                    )
                    .values(
                        status=WebhookEventStatus.PROCESSING.value,
                        error_msg=None,
                        updated_at=utcnow(),
                    )
                )
                await session.commit()
                claimed = result.rowcount == 1

                existing = (
                    await session.exec(
                        select(WebhookEvent).where(WebhookEvent.event_id == event_id)
                    )
                ).first()
        except SQLAlchemyError as e:
            logger.error(f"Failed to look up webhook event {event_id}: {e}")
            raise StoreFailure("Failed to look up webhook event") from e

        if existing is None:
            raise StoreFailure(f"Webhook event {event_id} conflicted on insert but was not found")

        if claimed:
            logger.info(f"Retrying unfinished webhook event {event_id}")
            return LedgerEntry(is_new=True, row_id=existing.id, status=WebhookEventStatus.PROCESSING.value)

        return LedgerEntry(is_new=False, row_id=existing.id, status=existing.status)

    async def mark(
        self,
        row_id: int,
        status: str,
        processed: bool,
        error_msg: Optional[str] = None,
    ) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.id == row_id)
                    .values(
                        status=status,
                        processed=processed,
                        error_msg=error_msg[:500] if error_msg else None,
                        updated_at=utcnow(),
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update webhook event row {row_id}: {e}")
            raise StoreFailure("Failed to update webhook event") from e

    async def claim_for_replay(self, row_id: int, statuses: Iterable[str]) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == row_id, self._claimable(statuses))
                .values(
                    status=WebhookEventStatus.PROCESSING.value,
                    error_msg=None,
                    updated_at=utcnow(),
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def list_by_status(self, statuses: Iterable[str], limit: int = 100) -> list[WebhookEvent]:
        async with self.session_factory() as session:
            rows = (
                await session.exec(
                    select(WebhookEvent)
                    .where(
                        WebhookEvent.provider == self.provider,
                        self._claimable(statuses),
                    )
                    .order_by(WebhookEvent.received_at.asc())
                    .limit(limit)
                )
            ).all()
            return list(rows)

    async def get(self, row_id: int) -> Optional[WebhookEvent]:
        async with self.session_factory() as session:
            return await session.get(WebhookEvent, row_id)
