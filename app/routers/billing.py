import hmac

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
from app.db.engine import get_session
from app.core.config import settings
from app.models.order import Order, OrderRead
from app.models.subscription import UserSubscription, UserSubscriptionRead
import logging

router = APIRouter(tags=["billing"])
logger = logging.getLogger(__name__)


def require_admin_key(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")) -> None:
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=503, detail="Billing lookups are disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), settings.ADMIN_API_KEY.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin key")


@router.get(
    "/subscriptions/{user_id}",
    response_model=UserSubscriptionRead,
    dependencies=[Depends(require_admin_key)],
)
async def get_user_subscription(user_id: str, session: AsyncSession = Depends(get_session)):
    subscription = await session.get(UserSubscription, user_id)
    if not subscription:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription


@router.get(
    "/orders/{order_id}",
    response_model=OrderRead,
    dependencies=[Depends(require_admin_key)],
)
async def get_order(order_id: str, session: AsyncSession = Depends(get_session)):
    order = (
        await session.exec(
            select(Order).where(
                Order.provider == settings.CREEM_PROVIDER_NAME,
                Order.order_id == order_id,
            )
        )
    ).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order
