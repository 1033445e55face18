from typing import Optional
from datetime import datetime
from enum import Enum
from sqlmodel import Field, SQLModel
from app.core.clock import utcnow


class WebhookEventStatus(str, Enum):
    PROCESSING = "processing"
    PROCESSED = "processed"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"
    MALFORMED = "malformed"
    FAILED = "failed"


class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(default="creem", index=True)
    # NULLs never collide, so id-less deliveries each get their own row.
    event_id: Optional[str] = Field(default=None, unique=True, index=True)
    event_type: Optional[str] = Field(default=None, index=True)
    raw_payload: str = Field(default="")
    processed: bool = Field(default=False, index=True)
    status: str = Field(default=WebhookEventStatus.PROCESSING.value, index=True)
    error_msg: Optional[str] = Field(default=None)
    received_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column_kwargs={"onupdate": utcnow},
    )
