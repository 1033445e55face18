from typing import Optional
from datetime import datetime
from decimal import Decimal
from sqlmodel import Field, SQLModel
from app.core.clock import utcnow
from sqlalchemy import UniqueConstraint


class Order(SQLModel, table=True):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("provider", "order_id", name="uq_orders_provider_order"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(default="creem", index=True)
    order_id: str = Field(index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    customer_email: Optional[str] = Field(default=None, index=True)
    plan_name: str = Field(default="unknown")
    amount: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    currency: str = Field(default="USD")
    status: str = Field(default="completed", index=True)
    # Snapshot of the provider object the order was recorded from.
    metadata_json: str = Field(default="{}")
    created_at: datetime = Field(default_factory=utcnow)


class OrderRead(SQLModel):
    provider: str
    order_id: str
    user_id: Optional[str]
    customer_email: Optional[str]
    plan_name: str
    amount: Decimal
    currency: str
    status: str
    created_at: datetime
