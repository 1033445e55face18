from typing import Optional
from sqlmodel import Field, SQLModel
from app.core.clock import utcnow
from datetime import datetime

class User(SQLModel, table=True):
    """Read-only mirror of the identity provider's users (id, email)."""

    __tablename__ = "users"

    id: str = Field(primary_key=True)
    email: str = Field(index=True)
    created_at: Optional[datetime] = Field(default_factory=utcnow)
