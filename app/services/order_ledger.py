import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from app.core.exceptions import StoreFailure
from app.models.order import Order

logger = logging.getLogger(__name__)


@dataclass
class OrderRecord:
    inserted: bool
    order_id: str


class OrderLedger:
    """Insert-once store of provider orders keyed by (provider, order_id).

    The same underlying order can be reported by more than one event (a
    checkout and the first subscription payment, say), so uniqueness here is
    enforced independently of the webhook event ledger.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def record_once(
        self,
        provider: str,
        order_id: str,
        *,
        user_id: Optional[str],
        customer_email: Optional[str],
        plan_name: str,
        amount: Decimal,
        currency: str,
        status: str = "completed",
        metadata: Optional[dict[str, Any]] = None,
    ) -> OrderRecord:
        order = Order(
            provider=provider,
            order_id=order_id,
            user_id=user_id,
            customer_email=customer_email,
            plan_name=plan_name,
            amount=amount,
            currency=currency,
            status=status,
            metadata_json=json.dumps(metadata or {}, ensure_ascii=False, default=str),
        )
        try:
            async with self.session_factory() as session:
                session.add(order)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.info(f"Order {order_id} already recorded, skipping")
                    return OrderRecord(inserted=False, order_id=order_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record order {order_id}: {e}")
            raise StoreFailure(f"Failed to record order {order_id}") from e

        logger.info(f"Order recorded: {order_id} ({amount} {currency}, user={user_id})")
        return OrderRecord(inserted=True, order_id=order_id)

    async def get(self, provider: str, order_id: str) -> Optional[Order]:
        async with self.session_factory() as session:
            return (
                await session.exec(
                    select(Order).where(
                        Order.provider == provider,
                        Order.order_id == order_id,
                    )
                )
            ).first()
