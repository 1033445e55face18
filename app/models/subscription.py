from typing import Optional
from sqlmodel import Field, SQLModel
from app.core.clock import utcnow
from datetime import datetime
from enum import Enum

class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

class UserSubscription(SQLModel, table=True):
    __tablename__ = "user_subscriptions"

    user_id: str = Field(primary_key=True)
    plan: Optional[str] = Field(default=None, index=True)
    status: str = Field(default=SubscriptionStatus.ACTIVE.value, index=True)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class UserSubscriptionRead(SQLModel):
    user_id: str
    plan: Optional[str]
    status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    updated_at: datetime
